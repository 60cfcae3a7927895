"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CatalogSyncResponse,
    HealthCheckResponse,
    WalletAuditResponse,
    WebhookResponse,
)

__all__ = [
    "create_app",
    "CatalogSyncResponse",
    "HealthCheckResponse",
    "WalletAuditResponse",
    "WebhookResponse",
]
