"""
Logging setup shared by the API and the catalog sync worker.

resellhub's own events go through structlog; records from libraries that log
through the standard library (uvicorn, SQLAlchemy, httpx) reach the same
stdout handler. Production writes one JSON object per line with
python-json-logger; other environments print readable console lines.
"""
import logging
import sys
from typing import Any, Dict, List

import structlog
from pythonjsonlogger import jsonlogger

from resellhub.config import Settings

# Event keys that can carry gateway or provider credentials.
REDACTED_KEYS = frozenset({"api_key", "secret_key", "signature", "password", "authorization"})
REDACTED = "***"

# Library loggers held above the application level.
LIBRARY_LEVELS: Dict[str, int] = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "redis": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential values bound to an event."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


class AppContext:
    """structlog processor stamping the service name and environment on each event."""

    def __init__(self, settings: Settings):
        self.app_name = settings.app_name
        self.app_env = settings.app_env

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("app_name", self.app_name)
        event_dict.setdefault("app_env", self.app_env)
        return event_dict


def _stdout_handler(production: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if production:
        handler.setFormatter(
            jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            )
        )
    else:
        handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def setup_logging(settings: Settings) -> None:
    """
    Configure structlog and the root logger from ``settings``.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        settings: Application settings; ``app_env`` picks the output format
    """
    production = settings.is_production
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        AppContext(settings),
        redact_secrets,
    ]
    if production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)
    root_logger.handlers = [_stdout_handler(production)]

    for name, level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        renderer="json" if production else "console",
    )
