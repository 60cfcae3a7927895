"""Builds provider clients from ``ProviderConfig`` rows."""
from typing import Dict, Type

import httpx
import structlog
from sqlalchemy import select

from resellhub.config import Settings
from resellhub.core.errors import ConfigurationError
from resellhub.database.connection import Database
from resellhub.database.models import ProviderConfig

from .apigames import APIGamesClient
from .base import CircuitBreaker, ProviderClient, ProviderCredentials
from .medanpedia import MedanPediaClient

logger = structlog.get_logger(__name__)

CLIENT_CLASSES: Dict[str, Type[ProviderClient]] = {
    APIGamesClient.code: APIGamesClient,
    MedanPediaClient.code: MedanPediaClient,
}


class ProviderRegistry:
    """
    Resolves a provider code to a configured client.

    Credentials are read on every call so a rotated key is picked up
    without a restart. Circuit breakers live on the registry, one per
    provider code, so failures accumulate across the clients it builds.
    """

    def __init__(self, database: Database, http_client: httpx.AsyncClient, settings: Settings):
        self.database = database
        self.http_client = http_client
        self.settings = settings
        self._breakers: Dict[str, CircuitBreaker] = {}

    def circuit_breaker(self, code: str) -> CircuitBreaker:
        """Return the breaker shared by every client for ``code``."""
        breaker = self._breakers.get(code)
        if breaker is None:
            breaker = self._breakers[code] = CircuitBreaker(code)
        return breaker

    @staticmethod
    def uses_caller_reference(code: str) -> bool:
        """Whether orders placed with ``code`` are idempotent on the caller's ``ref_id``."""
        client_class = CLIENT_CLASSES.get(code)
        return client_class is not None and client_class.uses_caller_reference

    def _base_url(self, code: str) -> str:
        if code == APIGamesClient.code:
            return self.settings.apigames_base_url
        return self.settings.medanpedia_base_url

    async def credentials(self, code: str) -> ProviderCredentials:
        """
        Load active credentials for ``code``.

        Raises:
            ConfigurationError: If the row is missing, inactive or incomplete
        """
        async with self.database.session() as session:
            config = (
                await session.execute(select(ProviderConfig).where(ProviderConfig.code == code))
            ).scalar_one_or_none()

        if config is None or not config.is_active:
            raise ConfigurationError(f"{code} configuration missing or inactive", provider=code)
        if not config.api_id or not config.api_key:
            raise ConfigurationError(f"{code} configuration missing (API ID or Key)", provider=code)

        return ProviderCredentials(
            code=code,
            api_id=config.api_id,
            api_key=config.api_key,
            margin_percent=config.margin_percent,
        )

    async def get(self, code: str) -> ProviderClient:
        """
        Build the client for ``code``.

        Raises:
            ConfigurationError: If the code is unknown or not configured
        """
        client_class = CLIENT_CLASSES.get(code)
        if client_class is None:
            raise ConfigurationError(f"Unknown provider {code}", provider=code)

        credentials = await self.credentials(code)
        return client_class(
            credentials,
            self.http_client,
            base_url=self._base_url(code),
            timeout=self.settings.provider_timeout_seconds,
            max_attempts=self.settings.provider_retry_max_attempts,
            circuit_breaker=self.circuit_breaker(code),
        )

    async def medanpedia(self) -> MedanPediaClient:
        client = await self.get(MedanPediaClient.code)
        if not isinstance(client, MedanPediaClient):
            raise ConfigurationError(
                f"{MedanPediaClient.code} is not bound to the MedanPedia client",
                provider=MedanPediaClient.code,
            )
        return client
