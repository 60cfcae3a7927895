"""Upstream provider clients normalised to one status taxonomy."""
from .apigames import APIGamesClient
from .base import (
    CircuitBreaker,
    OrderPlacement,
    ProviderClient,
    ProviderCredentials,
    ProviderError,
    ProviderLogicError,
    ProviderStatus,
    ProviderTransportError,
    RefillNotSupportedError,
    RefillRequest,
    StatusCheck,
)
from .medanpedia import MedanPediaClient, ServiceCatalog, StatusShape, decode_status
from .registry import ProviderRegistry

__all__ = [
    "APIGamesClient",
    "CircuitBreaker",
    "MedanPediaClient",
    "OrderPlacement",
    "ProviderClient",
    "ProviderCredentials",
    "ProviderError",
    "ProviderLogicError",
    "ProviderRegistry",
    "ProviderStatus",
    "ProviderTransportError",
    "RefillNotSupportedError",
    "RefillRequest",
    "ServiceCatalog",
    "StatusCheck",
    "StatusShape",
    "decode_status",
]
