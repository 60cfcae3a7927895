"""
Service wiring for the API process.

Every component is built once per process by ``build_services`` and stored on
``app.state``; routes receive them through FastAPI dependencies.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Optional

import httpx
import redis.asyncio as aioredis
from fastapi import Request

from resellhub.config import Settings
from resellhub.core.catalog_sync import CatalogSyncEngine
from resellhub.core.fulfillment import ProviderFulfillmentOrchestrator
from resellhub.core.ledger import WalletLedger
from resellhub.core.webhook_reconciler import PaymentWebhookReconciler
from resellhub.database.connection import Database
from resellhub.integrations.pakasir_client import PakasirClient
from resellhub.integrations.providers.registry import ProviderRegistry
from resellhub.integrations.webhook_log import WebhookLog
from resellhub.monitoring.health import HealthCheck


@dataclass
class Services:
    settings: Settings
    database: Database
    ledger: WalletLedger
    reconciler: PaymentWebhookReconciler
    catalog_sync: CatalogSyncEngine
    fulfillment: ProviderFulfillmentOrchestrator
    webhook_log: WebhookLog
    health: HealthCheck
    # Catalog sync is single-flight per process.
    sync_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def build_services(
    settings: Settings,
    database: Database,
    http_client: httpx.AsyncClient,
    redis_client: Optional[aioredis.Redis] = None,
    gateway: Optional[PakasirClient] = None,
) -> Services:
    """
    Build every component from its explicit dependencies.

    Args:
        settings: Application settings
        database: Open database handle
        http_client: Shared outbound HTTP client
        redis_client: Redis client backing the diagnostic log, if enabled
        gateway: Payment gateway client; built from settings if omitted

    Returns:
        Services: Wired components
    """
    registry = ProviderRegistry(database, http_client, settings)
    ledger = WalletLedger(database)
    fulfillment = ProviderFulfillmentOrchestrator(database, registry)
    webhook_log = WebhookLog(
        redis_client,
        key=settings.webhook_log_key,
        max_entries=settings.webhook_log_max_entries,
    )
    gateway = gateway or PakasirClient(
        http_client,
        base_url=settings.pakasir_base_url,
        timeout=settings.provider_timeout_seconds,
    )
    reconciler = PaymentWebhookReconciler(
        database=database,
        gateway=gateway,
        ledger=ledger,
        fulfillment=fulfillment,
        webhook_log=webhook_log,
        settings=settings,
    )
    return Services(
        settings=settings,
        database=database,
        ledger=ledger,
        reconciler=reconciler,
        catalog_sync=CatalogSyncEngine(database, registry, settings),
        fulfillment=fulfillment,
        webhook_log=webhook_log,
        health=HealthCheck(database, redis_client),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
