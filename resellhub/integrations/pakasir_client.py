"""
Pakasir payment gateway client.

Inbound webhooks are never trusted on their own: ``verify`` re-queries the
gateway's transaction-detail endpoint and only a notification the gateway
itself confirms becomes a ``VerifiedNotification``.
"""
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from resellhub.core.errors import GatewayTransportError, VerificationError
from resellhub.database.models import PaymentGatewayConfig

logger = structlog.get_logger(__name__)

_SEAL = object()


class WebhookNotification(BaseModel):
    """Inbound notification body. Untrusted."""

    order_id: str = Field(..., min_length=1, max_length=64)
    status: str = Field(..., min_length=1, max_length=32)
    amount: Optional[Decimal] = None


@dataclass(frozen=True)
class VerifiedNotification:
    """
    A notification confirmed by the gateway's own transaction record.

    Only ``PakasirClient.verify`` can build one; constructing it directly
    raises ``TypeError``.
    """

    correlation_id: str
    status: str
    amount: Decimal
    raw: Dict[str, Any]
    _seal: object = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self._seal is not _SEAL:
            raise TypeError("VerifiedNotification is only issued by PakasirClient.verify")


def _format_amount(amount: Optional[Decimal]) -> str:
    if amount is None:
        return ""
    if amount == amount.to_integral_value():
        return str(int(amount))
    return str(amount)


class PakasirClient:
    """Queries the gateway for authoritative transaction state."""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str, timeout: float = 10.0):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def fetch_transaction(
        self, config: PaymentGatewayConfig, order_id: str, amount: Optional[Decimal]
    ) -> Dict[str, Any]:
        """
        Fetch the transaction-detail document.

        Raises:
            GatewayTransportError: On network, HTTP or JSON failure
        """
        params = {
            "project": config.slug or "",
            "amount": _format_amount(amount),
            "order_id": order_id,
            "api_key": config.api_key or "",
        }
        try:
            response = await self.http_client.get(
                f"{self.base_url}/api/transactiondetail", params=params, timeout=self.timeout
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("gateway_verification_transport_error", order_id=order_id, error=str(e))
            raise GatewayTransportError(f"Gateway query failed: {e}", order_id=order_id)

        if not isinstance(payload, dict):
            raise GatewayTransportError("Gateway returned a non-object body", order_id=order_id)
        return payload

    async def verify(
        self, config: PaymentGatewayConfig, notification: WebhookNotification
    ) -> VerifiedNotification:
        """
        Confirm a notification against the gateway.

        Args:
            config: Active gateway configuration
            notification: Untrusted inbound notification

        Returns:
            VerifiedNotification: Gateway-confirmed status and amount

        Raises:
            VerificationError: If the gateway has no such transaction or
                reports a different status
            GatewayTransportError: If the gateway could not be queried
        """
        payload = await self.fetch_transaction(config, notification.order_id, notification.amount)

        transaction = payload.get("transaction")
        if not isinstance(transaction, dict) or not transaction:
            logger.warning("gateway_verification_failed", order_id=notification.order_id)
            raise VerificationError("Verification failed", order_id=notification.order_id)

        real_status = transaction.get("status")
        if real_status != notification.status:
            logger.warning(
                "gateway_status_mismatch",
                order_id=notification.order_id,
                webhook_status=notification.status,
                gateway_status=real_status,
            )
            raise VerificationError("Status mismatch", order_id=notification.order_id)

        try:
            real_amount = Decimal(str(transaction.get("amount")))
        except InvalidOperation:
            raise VerificationError(
                "Gateway transaction carries no amount", order_id=notification.order_id
            )
        if not real_amount.is_finite():
            raise VerificationError(
                "Gateway transaction carries no amount", order_id=notification.order_id
            )

        logger.info(
            "gateway_notification_verified",
            order_id=notification.order_id,
            status=real_status,
            amount=str(real_amount),
        )
        return VerifiedNotification(
            correlation_id=notification.order_id,
            status=real_status,
            amount=real_amount,
            raw=payload,
            _seal=_SEAL,
        )
