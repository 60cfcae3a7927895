"""
Payment webhook reconciliation.

Implements the pipeline every inbound payment notification goes through:

    verify -> resolve -> amount check -> idempotency gate -> mutate

- Verification re-queries the gateway before any transaction opens
- Resolution tries orders (``invoice_code``) first, then deposits (``id``)
- The idempotency gate is a conditional status update inside the same unit
  of work as the mutation, so concurrent redeliveries cannot both pass it
- Deposit credits go through the wallet ledger in that unit of work
- Order fulfillment runs after the PROCESSING transition commits, outside
  the processing timeout; its failures never revert the paid order
"""
import asyncio
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update

from resellhub.config import Settings
from resellhub.core.errors import (
    AlreadyProcessedError,
    AmountMismatchError,
    ConfigurationError,
    NotFoundError,
    ReconciliationError,
)
from resellhub.core.fulfillment import FulfillmentOrchestrator
from resellhub.core.ledger import WalletLedger
from resellhub.database.connection import Database, UnitOfWork
from resellhub.database.models import (
    Deposit,
    DepositStatus,
    Order,
    OrderStatus,
    PaymentGatewayConfig,
)
from resellhub.integrations.pakasir_client import (
    PakasirClient,
    VerifiedNotification,
    WebhookNotification,
)
from resellhub.integrations.webhook_log import WebhookLog
from resellhub.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

COMPLETED_STATUS = "completed"
CANCEL_STATUSES = frozenset({"canceled", "failed", "expired"})


class Aggregate(str, Enum):
    ORDER = "ORDER"
    DEPOSIT = "DEPOSIT"


class OutcomeAction(str, Enum):
    CREDITED = "credited"
    PROCESSING = "processing"
    CANCELED = "canceled"
    IGNORED = "ignored"
    ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class ReconciliationOutcome:
    """Successful result of handling one notification."""

    aggregate: Aggregate
    action: OutcomeAction
    correlation_id: str
    message: str
    fulfillment_error: Optional[str] = None
    # Set on the delivery that moved an order to PROCESSING.
    paid_order_id: Optional[int] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": True,
            "type": self.aggregate.value,
            "action": self.action.value,
            "message": self.message,
        }
        if self.fulfillment_error:
            body["fulfillment_error"] = self.fulfillment_error
        return body


class PaymentWebhookReconciler:
    """Turns verified payment notifications into order and deposit transitions."""

    def __init__(
        self,
        database: Database,
        gateway: PakasirClient,
        ledger: WalletLedger,
        fulfillment: FulfillmentOrchestrator,
        webhook_log: WebhookLog,
        settings: Settings,
    ):
        """
        Initialize reconciler.

        Args:
            database: Database handle
            gateway: Payment gateway client used for verification
            ledger: Wallet ledger crediting deposits
            fulfillment: Orchestrator placing provider orders for paid orders
            webhook_log: Bounded diagnostic log
            settings: Application settings
        """
        self.database = database
        self.gateway = gateway
        self.ledger = ledger
        self.fulfillment = fulfillment
        self.webhook_log = webhook_log
        self.gateway_name = settings.payment_gateway_name
        self.tolerance = Decimal(settings.payment_amount_tolerance)

    async def handle(
        self, notification: WebhookNotification, timeout: Optional[float] = None
    ) -> ReconciliationOutcome:
        """
        Handle one inbound notification.

        ``timeout`` bounds verification through the committed transition.
        Fulfillment of a paid order runs afterwards and is not bounded by
        it: once the order is PROCESSING a redelivery can no longer start
        fulfillment, so it must not be cancelled halfway.

        Args:
            notification: Untrusted webhook body
            timeout: Seconds allowed for verify through mutate, None for no limit

        Returns:
            ReconciliationOutcome: What was done; redeliveries report
            ``ALREADY_PROCESSED``

        Raises:
            ConfigurationError: If the gateway config is missing or inactive
            VerificationError: If the gateway does not confirm the notification
            GatewayTransportError: If the gateway could not be queried
            NotFoundError: If no order or deposit matches the correlation id
            AmountMismatchError: If the paid amount is outside the tolerance
            asyncio.TimeoutError: If verify through mutate exceeded ``timeout``
        """
        start_time = time.time()
        metrics.record_webhook_received(self.gateway_name)
        logger.info(
            "payment_webhook_received",
            order_id=notification.order_id,
            status=notification.status,
        )

        try:
            outcome = await asyncio.wait_for(self._reconcile(notification), timeout=timeout)
        except ReconciliationError as e:
            metrics.record_webhook_rejected(e.reason)
            logger.warning(
                "payment_webhook_rejected",
                order_id=notification.order_id,
                reason=e.reason,
                error=e.message,
            )
            raise

        metrics.record_webhook_processed(
            outcome.aggregate.value.lower(), outcome.action.value, time.time() - start_time
        )
        logger.info(
            "payment_webhook_processed",
            order_id=notification.order_id,
            aggregate=outcome.aggregate.value,
            action=outcome.action.value,
        )

        if outcome.paid_order_id is not None:
            outcome = await self._fulfill(outcome.paid_order_id, outcome)
        return outcome

    async def _reconcile(self, notification: WebhookNotification) -> ReconciliationOutcome:
        config = await self._load_gateway_config()
        verified = await self.gateway.verify(config, notification)
        await self.webhook_log.append(notification.model_dump(mode="json"), verified.raw)
        return await self.apply(verified)

    async def _load_gateway_config(self) -> PaymentGatewayConfig:
        async with self.database.session() as session:
            config = (
                await session.execute(
                    select(PaymentGatewayConfig).where(
                        PaymentGatewayConfig.name == self.gateway_name
                    )
                )
            ).scalar_one_or_none()

        if config is None or not config.is_active:
            logger.error("payment_gateway_config_missing", gateway=self.gateway_name)
            raise ConfigurationError("Config missing", gateway=self.gateway_name)
        return config

    def _check_amount(self, expected: Decimal, verified: VerifiedNotification) -> None:
        difference = abs(Decimal(str(expected)) - verified.amount)
        if difference > self.tolerance:
            logger.error(
                "payment_amount_mismatch",
                order_id=verified.correlation_id,
                expected=str(expected),
                paid=str(verified.amount),
            )
            raise AmountMismatchError(
                "Amount mismatch",
                order_id=verified.correlation_id,
                expected=str(expected),
                paid=str(verified.amount),
            )

    async def apply(self, verified: VerifiedNotification) -> ReconciliationOutcome:
        """
        Apply a verified notification to its order or deposit.

        Everything from resolution to the last write runs in one unit of
        work. A paid order comes back with ``paid_order_id`` set; placing
        its provider orders is left to the caller.
        """
        try:
            async with self.database.unit_of_work() as uow:
                order = (
                    await uow.session.execute(
                        select(Order).where(Order.invoice_code == verified.correlation_id)
                    )
                ).scalar_one_or_none()
                if order is not None:
                    self._check_amount(order.total_amount, verified)
                    outcome = await self._apply_to_order(uow, order, verified)
                else:
                    deposit = await uow.session.get(Deposit, verified.correlation_id)
                    if deposit is None:
                        raise NotFoundError(
                            "Order not found", order_id=verified.correlation_id
                        )
                    # The gateway charges total_pay; only amount is credited.
                    self._check_amount(deposit.total_pay, verified)
                    outcome = await self._apply_to_deposit(uow, deposit, verified)
        except AlreadyProcessedError as e:
            logger.info(
                "payment_webhook_already_processed",
                order_id=verified.correlation_id,
                **e.context,
            )
            return ReconciliationOutcome(
                aggregate=Aggregate(e.context["aggregate"]),
                action=OutcomeAction.ALREADY_PROCESSED,
                correlation_id=verified.correlation_id,
                message="Already processed",
            )

        return outcome

    async def _gate(
        self,
        uow: UnitOfWork,
        model: type,
        key_column: Any,
        key: Any,
        pending: str,
        target: str,
        aggregate: Aggregate,
    ) -> None:
        """
        Transition ``pending`` -> ``target`` or raise ``AlreadyProcessedError``.

        The status check and the transition are one conditional UPDATE, so
        only one of several concurrent deliveries can win it.
        """
        result = await uow.session.execute(
            update(model)
            .where(key_column == key, model.status == pending)
            .values(status=target)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        current = (
            await uow.session.execute(select(model.status).where(key_column == key))
        ).scalar_one()
        if current == OrderStatus.CANCELED.value and target != OrderStatus.CANCELED.value:
            # Paid after cancellation: acknowledged, never applied.
            logger.error(
                "payment_after_cancel",
                aggregate=aggregate.value,
                key=str(key),
            )
        raise AlreadyProcessedError(
            "Already processed", aggregate=aggregate.value, status=current
        )

    async def _apply_to_deposit(
        self, uow: UnitOfWork, deposit: Deposit, verified: VerifiedNotification
    ) -> ReconciliationOutcome:
        status = verified.status
        if status == COMPLETED_STATUS:
            await self._gate(
                uow, Deposit, Deposit.id, deposit.id,
                DepositStatus.PENDING.value, DepositStatus.PAID.value, Aggregate.DEPOSIT,
            )
            await self.ledger.credit(
                deposit.user_id,
                deposit.amount,
                reference_id=deposit.id,
                description=f"Deposit via {deposit.payment_method}",
                uow=uow,
            )
            logger.info(
                "deposit_credited",
                deposit_id=deposit.id,
                user_id=deposit.user_id,
                amount=str(deposit.amount),
            )
            return ReconciliationOutcome(
                Aggregate.DEPOSIT, OutcomeAction.CREDITED, deposit.id, "Deposit credited"
            )

        if status in CANCEL_STATUSES:
            await self._gate(
                uow, Deposit, Deposit.id, deposit.id,
                DepositStatus.PENDING.value, DepositStatus.CANCELED.value, Aggregate.DEPOSIT,
            )
            logger.info("deposit_canceled", deposit_id=deposit.id, gateway_status=status)
            return ReconciliationOutcome(
                Aggregate.DEPOSIT, OutcomeAction.CANCELED, deposit.id, "Deposit canceled"
            )

        return ReconciliationOutcome(
            Aggregate.DEPOSIT, OutcomeAction.IGNORED, deposit.id, "Ignored status for deposit"
        )

    async def _apply_to_order(
        self, uow: UnitOfWork, order: Order, verified: VerifiedNotification
    ) -> ReconciliationOutcome:
        status = verified.status
        invoice = order.invoice_code
        if status == COMPLETED_STATUS:
            await self._gate(
                uow, Order, Order.id, order.id,
                OrderStatus.PENDING.value, OrderStatus.PROCESSING.value, Aggregate.ORDER,
            )
            logger.info("order_paid", order_id=order.id, invoice_code=invoice)
            return ReconciliationOutcome(
                Aggregate.ORDER,
                OutcomeAction.PROCESSING,
                invoice,
                "Order is being processed",
                paid_order_id=order.id,
            )

        if status in CANCEL_STATUSES:
            await self._gate(
                uow, Order, Order.id, order.id,
                OrderStatus.PENDING.value, OrderStatus.CANCELED.value, Aggregate.ORDER,
            )
            logger.info("order_canceled", order_id=order.id, gateway_status=status)
            return ReconciliationOutcome(
                Aggregate.ORDER, OutcomeAction.CANCELED, invoice, "Order canceled"
            )

        return ReconciliationOutcome(
            Aggregate.ORDER, OutcomeAction.IGNORED, invoice, "Ignored status for order"
        )

    async def _fulfill(
        self, order_id: int, outcome: ReconciliationOutcome
    ) -> ReconciliationOutcome:
        try:
            await self.fulfillment.fulfill_order(order_id)
        except asyncio.CancelledError:
            # Redeliveries stop at the gate, so this order needs a manual retry.
            logger.error("order_fulfillment_interrupted", order_id=order_id)
            metrics.record_fulfillment_failure()
            raise
        except Exception as e:
            # The order stays PROCESSING; it is paid and must be retried, not reverted.
            logger.error(
                "order_fulfillment_failed",
                order_id=order_id,
                error=str(e),
                exc_info=True,
            )
            metrics.record_fulfillment_failure()
            return replace(outcome, fulfillment_error=str(e) or type(e).__name__)
        return outcome
