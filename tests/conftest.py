"""
Pytest configuration and fixtures.

Database tests run against a temporary SQLite file; outbound HTTP goes
through ``httpx.MockTransport``.
"""
import json
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from resellhub.config import Settings
from resellhub.core.ledger import WalletLedger
from resellhub.core.webhook_reconciler import PaymentWebhookReconciler
from resellhub.database.connection import Database
from resellhub.database.models import (
    Deposit,
    DepositStatus,
    Order,
    OrderStatus,
    PaymentGatewayConfig,
    ProviderConfig,
    User,
)
from resellhub.integrations.pakasir_client import PakasirClient
from resellhub.integrations.webhook_log import WebhookLog

PAKASIR_URL = "https://app.pakasir.com"
PROJECT_SLUG = "resellhub-test"
PAKASIR_API_KEY = "pakasir_test_key"


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'resellhub_test.db'}",
        redis_url="redis://localhost:6379/1",
        webhook_log_enabled=False,
        pakasir_base_url=PAKASIR_URL,
        apigames_base_url="https://v1.apigames.id",
        medanpedia_base_url="https://api.medanpedia.co.id",
        provider_retry_max_attempts=1,
        webhook_timeout_seconds=5,
        catalog_sync_timeout_seconds=10,
        app_name="resellhub-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Create a fresh database with all tables."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    db = Database(engine)
    await db.create_all()
    yield db
    await db.dispose()


class Seeder:
    """Inserts the storefront rows the reconciliation layer reads."""

    def __init__(self, database: Database):
        self.database = database

    async def _add(self, row: Any) -> Any:
        async with self.database.unit_of_work() as uow:
            uow.session.add(row)
            await uow.flush()
        return row

    async def gateway_config(self, is_active: bool = True) -> PaymentGatewayConfig:
        return await self._add(
            PaymentGatewayConfig(
                name="pakasir", slug=PROJECT_SLUG, api_key=PAKASIR_API_KEY, is_active=is_active
            )
        )

    async def provider_config(
        self, code: str, margin_percent: Optional[float] = None, is_active: bool = True
    ) -> ProviderConfig:
        return await self._add(
            ProviderConfig(
                code=code,
                api_id=f"{code.lower()}-id",
                api_key=f"{code.lower()}-key",
                margin_percent=margin_percent,
                is_active=is_active,
            )
        )

    async def user(self, email: str = "buyer@example.com") -> User:
        return await self._add(User(email=email, name="Buyer", balance=Decimal("0")))

    async def deposit(
        self,
        deposit_id: str,
        user_id: int,
        amount: str = "50000",
        total_pay: str = "50700",
        status: DepositStatus = DepositStatus.PENDING,
    ) -> Deposit:
        return await self._add(
            Deposit(
                id=deposit_id,
                user_id=user_id,
                amount=Decimal(amount),
                total_pay=Decimal(total_pay),
                payment_method="QRIS",
                status=status.value,
            )
        )

    async def order(
        self,
        invoice_code: str,
        total_amount: str = "25000",
        status: OrderStatus = OrderStatus.PENDING,
        user_id: Optional[int] = None,
    ) -> Order:
        return await self._add(
            Order(
                invoice_code=invoice_code,
                user_id=user_id,
                total_amount=Decimal(total_amount),
                status=status.value,
            )
        )


@pytest.fixture
def seed(database: Database) -> Seeder:
    return Seeder(database)


@pytest.fixture
def gateway_transactions() -> Dict[str, Dict[str, Any]]:
    """Authoritative gateway state keyed by order id; tests fill it in."""
    return {}


@pytest.fixture
def gateway_requests() -> list:
    return []


@pytest.fixture
def pakasir_handler(
    gateway_transactions: Dict[str, Dict[str, Any]], gateway_requests: list
) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        gateway_requests.append(request)
        if request.url.path != "/api/transactiondetail":
            return httpx.Response(404, json={"error": "not found"})
        if request.url.params.get("api_key") != PAKASIR_API_KEY:
            return httpx.Response(200, json={"error": "invalid api key"})
        transaction = gateway_transactions.get(request.url.params.get("order_id"))
        if transaction is None:
            return httpx.Response(200, json={"error": "transaction not found"})
        return httpx.Response(200, content=json.dumps({"transaction": transaction}))

    return handler


@pytest_asyncio.fixture
async def pakasir_client(
    pakasir_handler: Callable[[httpx.Request], httpx.Response],
) -> AsyncGenerator[PakasirClient, Any]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(pakasir_handler)) as client:
        yield PakasirClient(client, base_url=PAKASIR_URL)


@pytest.fixture
def fulfillment() -> AsyncMock:
    """Fulfillment orchestrator double."""
    orchestrator = AsyncMock()
    orchestrator.fulfill_order.return_value = None
    return orchestrator


@pytest.fixture
def ledger(database: Database) -> WalletLedger:
    return WalletLedger(database)


@pytest.fixture
def reconciler(
    database: Database,
    pakasir_client: PakasirClient,
    ledger: WalletLedger,
    fulfillment: AsyncMock,
    test_settings: Settings,
) -> PaymentWebhookReconciler:
    return PaymentWebhookReconciler(
        database=database,
        gateway=pakasir_client,
        ledger=ledger,
        fulfillment=fulfillment,
        webhook_log=WebhookLog(None),
        settings=test_settings,
    )
