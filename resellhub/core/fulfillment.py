"""
Order fulfillment: places and tracks provider orders for paid orders.

The webhook reconciler only depends on the ``FulfillmentOrchestrator``
protocol; ``ProviderFulfillmentOrchestrator`` is the implementation backed
by the provider clients.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from resellhub.database.connection import Database
from resellhub.database.models import (
    Order,
    OrderItem,
    OrderStatus,
    ProductVariant,
    VariantProvider,
)
from resellhub.integrations.providers.base import (
    OrderPlacement,
    ProviderLogicError,
    ProviderStatus,
)
from resellhub.integrations.providers.registry import ProviderRegistry

logger = structlog.get_logger(__name__)


class FulfillmentOrchestrator(Protocol):
    """Places provider orders for a paid order. Must be idempotent per order."""

    async def fulfill_order(self, order_id: int, force: bool = False) -> None:
        ...


class FulfillmentError(Exception):
    """Raised when an order cannot be fulfilled at all."""

    pass


@dataclass
class TrackingReport:
    order_id: int
    order_status: str
    items: Dict[int, ProviderStatus] = field(default_factory=dict)


def select_binding(variant: ProductVariant) -> Optional[VariantProvider]:
    """Pick the variant's best active provider binding."""
    active = [binding for binding in variant.providers if binding.provider_status]
    for binding in active:
        if binding.provider_code == variant.best_provider:
            return binding
    return active[0] if active else None


class ProviderFulfillmentOrchestrator:
    """
    Fulfills orders through the upstream providers.

    Each ``OrderItem`` gets one provider order. An item is placed at most
    once: once ``provider_ref`` is set it is skipped. ERROR results leave
    ``provider_ref`` empty. Providers tracked by the caller's ``ref_id``
    dedupe a re-placement, so those items are retried on the next call;
    for the others an ERROR may hide an accepted order, so the item is held
    for review until an operator forces a retry.
    """

    def __init__(self, database: Database, registry: ProviderRegistry):
        self.database = database
        self.registry = registry

    async def _load_order(self, order_id: int) -> Order:
        async with self.database.session() as session:
            stmt = (
                select(Order)
                .where(Order.id == order_id)
                .options(
                    selectinload(Order.items)
                    .selectinload(OrderItem.variant)
                    .selectinload(ProductVariant.providers)
                )
            )
            order = (await session.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise FulfillmentError(f"Order {order_id} not found")
        return order

    async def _record_placement(
        self, item_id: int, provider_code: str, reference: str, placement: OrderPlacement
    ) -> None:
        async with self.database.unit_of_work() as uow:
            item = await uow.session.get(OrderItem, item_id)
            item.provider_code = provider_code
            item.provider_status = placement.status.value
            item.provider_message = placement.message
            if placement.provider_order_id:
                item.provider_order_id = placement.provider_order_id
            if placement.serial_number:
                item.serial_number = placement.serial_number
            if placement.status != ProviderStatus.ERROR:
                item.provider_ref = reference

    async def _mark_failed(self, item_id: int, message: str) -> None:
        async with self.database.unit_of_work() as uow:
            item = await uow.session.get(OrderItem, item_id)
            item.provider_status = ProviderStatus.FAILED.value
            item.provider_message = message

    async def _deliver_if_complete(self, order_id: int) -> str:
        """Move a PROCESSING order to DELIVERED once every item succeeded."""
        async with self.database.unit_of_work() as uow:
            statuses = (
                await uow.session.execute(
                    select(OrderItem.provider_status).where(OrderItem.order_id == order_id)
                )
            ).scalars().all()
            if statuses and all(s == ProviderStatus.SUCCESS.value for s in statuses):
                await uow.session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status == OrderStatus.PROCESSING.value)
                    .values(status=OrderStatus.DELIVERED.value)
                )
            status = (
                await uow.session.execute(select(Order.status).where(Order.id == order_id))
            ).scalar_one()
        if status == OrderStatus.DELIVERED.value:
            logger.info("order_delivered", order_id=order_id)
        return status

    def _needs_review(self, item: OrderItem) -> bool:
        return (
            item.provider_status == ProviderStatus.ERROR.value
            and not item.provider_ref
            and bool(item.provider_code)
            and not self.registry.uses_caller_reference(item.provider_code)
        )

    async def fulfill_order(self, order_id: int, force: bool = False) -> None:
        """
        Place provider orders for every unplaced item.

        Args:
            order_id: Paid order in PROCESSING
            force: Re-place items whose earlier placement had an unknown
                outcome at a provider without caller references

        Raises:
            FulfillmentError: If the order does not exist
            ConfigurationError: If a provider is not configured
        """
        order = await self._load_order(order_id)
        if order.status != OrderStatus.PROCESSING.value:
            logger.warning(
                "fulfillment_skipped_order_not_processing",
                order_id=order_id,
                status=order.status,
            )
            return

        for item in order.items:
            if item.provider_ref:
                continue
            if self._needs_review(item) and not force:
                logger.error(
                    "fulfillment_item_needs_review",
                    order_id=order_id,
                    item_id=item.id,
                    provider=item.provider_code,
                )
                continue

            binding = select_binding(item.variant)
            if binding is None:
                logger.error("fulfillment_no_provider_binding", order_id=order_id, item_id=item.id)
                await self._mark_failed(item.id, "No active provider for variant")
                continue

            client = await self.registry.get(binding.provider_code)
            ref_id = f"{order.invoice_code}-{item.id}"
            placement = await client.place_order(
                code=binding.provider_sku,
                target=item.target,
                ref_id=ref_id,
                server_id=item.server_id or "",
                quantity=item.quantity,
            )
            reference = ref_id
            if not client.uses_caller_reference and placement.provider_order_id:
                reference = placement.provider_order_id
            await self._record_placement(item.id, binding.provider_code, reference, placement)

            logger.info(
                "fulfillment_item_placed",
                order_id=order_id,
                item_id=item.id,
                provider=binding.provider_code,
                status=placement.status.value,
            )

        await self._deliver_if_complete(order_id)

    async def track_order(self, order_id: int) -> TrackingReport:
        """
        Poll upstream status for placed, unfinished items.

        ERROR answers leave the item untouched so the next poll retries.
        """
        order = await self._load_order(order_id)
        report = TrackingReport(order_id=order_id, order_status=order.status)

        for item in order.items:
            current = ProviderStatus(item.provider_status) if item.provider_status else None
            if not item.provider_ref or not item.provider_code or (current and current.is_terminal):
                if current is not None:
                    report.items[item.id] = current
                continue

            client = await self.registry.get(item.provider_code)
            try:
                check = await client.check_status(item.provider_ref)
            except ProviderLogicError as e:
                logger.warning(
                    "fulfillment_tracking_rejected",
                    order_id=order_id,
                    item_id=item.id,
                    provider=item.provider_code,
                    error=str(e),
                )
                report.items[item.id] = current or ProviderStatus.PENDING
                continue
            if check.status == ProviderStatus.ERROR:
                logger.warning(
                    "fulfillment_tracking_transport_error", order_id=order_id, item_id=item.id
                )
                report.items[item.id] = current or ProviderStatus.PENDING
                continue
            report.items[item.id] = check.status

            async with self.database.unit_of_work() as uow:
                row = await uow.session.get(OrderItem, item.id)
                row.provider_status = check.status.value
                if check.message:
                    row.provider_message = check.message
                if check.serial_number:
                    row.serial_number = check.serial_number

        report.order_status = await self._deliver_if_complete(order_id)
        return report
