"""
MedanPedia client (social media services).

Every call is a form-encoded POST carrying the static ``api_id``/``api_key``
pair; there is no request signature. Responses are ``{status, data, msg}``
where ``status`` is the success flag.

Status responses come in two shapes, decoded in this order:

- ``NESTED``: ``{"status": true, "data": {"status": "Sukses", ...}}``
- ``FLAT``: ``{"status": "Sukses", ...}``
- ``ABSENT``: neither carries a status string

An ``ABSENT`` answer whose ``status`` flag is ``false`` is a rejected lookup
and raises ``ProviderLogicError``; any other ``ABSENT`` answer is PENDING.
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .base import (
    CircuitBreaker,
    OrderPlacement,
    ProviderClient,
    ProviderCredentials,
    ProviderLogicError,
    ProviderStatus,
    ProviderTransportError,
    RefillRequest,
    StatusCheck,
)

logger = structlog.get_logger(__name__)

_PROCESSING_STATUSES = {"proses", "validasi provider", "pending"}


class StatusShape(str, Enum):
    NESTED = "nested"
    FLAT = "flat"
    ABSENT = "absent"


@dataclass(frozen=True)
class DecodedStatus:
    shape: StatusShape
    raw_status: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)


def decode_status(payload: Dict[str, Any]) -> DecodedStatus:
    """Decode the upstream status text from either supported response shape."""
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("status"), str):
        return DecodedStatus(StatusShape.NESTED, data["status"], data)
    if isinstance(payload.get("status"), str):
        return DecodedStatus(StatusShape.FLAT, payload["status"], payload)
    return DecodedStatus(StatusShape.ABSENT, None, data if isinstance(data, dict) else {})


def map_status(raw_status: Optional[str]) -> ProviderStatus:
    upstream = (raw_status or "").strip().lower()
    if upstream == "sukses":
        return ProviderStatus.SUCCESS
    if upstream == "gagal":
        return ProviderStatus.FAILED
    if upstream in _PROCESSING_STATUSES:
        return ProviderStatus.PROCESSING
    return ProviderStatus.PENDING


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class ServiceCatalog:
    """
    Remote service list.

    ``complete`` is only set by a fetch that returned the whole list; the
    catalog cleanup refuses to run on anything else.
    """

    services: List[Dict[str, Any]]
    complete: bool = False


class MedanPediaClient(ProviderClient):
    """Form-encoded client for MedanPedia."""

    code = "MEDANPEDIA"
    supports_refill = True
    uses_caller_reference = False

    def __init__(
        self,
        credentials: ProviderCredentials,
        http_client: httpx.AsyncClient,
        base_url: str = "https://api.medanpedia.co.id",
        timeout: float = 30.0,
        max_attempts: int = 3,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_id = credentials.api_id
        self.api_key = credentials.api_key
        self.margin_percent = credentials.margin_percent
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.code)

    async def _post(self, endpoint: str, **fields: Any) -> Dict[str, Any]:
        """
        POST form fields with the static credentials.

        Raises:
            ProviderTransportError: On network, HTTP or JSON failure
        """
        form = {"api_id": self.api_id, "api_key": self.api_key}
        form.update({k: str(v) for k, v in fields.items() if v is not None})

        async def _send() -> Dict[str, Any]:
            try:
                response = await self.http_client.post(
                    f"{self.base_url}/{endpoint}", data=form, timeout=self.timeout
                )
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise ProviderTransportError(str(e), provider=self.code, original_error=e)
            if not isinstance(payload, dict):
                raise ProviderTransportError(
                    f"Unexpected response body: {type(payload).__name__}", provider=self.code
                )
            return payload

        return await self.circuit_breaker.call(_send)

    async def _post_idempotent(self, endpoint: str, **fields: Any) -> Dict[str, Any]:
        """``_post`` with exponential backoff retries on transport errors; reads only."""

        @retry(
            retry=retry_if_exception_type(ProviderTransportError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            reraise=True,
        )
        async def _attempt() -> Dict[str, Any]:
            return await self._post(endpoint, **fields)

        return await _attempt()

    async def place_order(
        self,
        code: str,
        target: str,
        quantity: int = 1,
        custom_comments: Optional[str] = None,
        custom_link: Optional[str] = None,
        **kwargs: Any,
    ) -> OrderPlacement:
        """
        Place an order for service ``code``.

        Never retried: MedanPedia has no idempotency token, so a retry after
        a lost response could place a second order.

        Returns:
            OrderPlacement: PROCESSING with the upstream order id on
            acceptance, FAILED when rejected, ERROR when the outcome is unknown
        """
        start_time = time.time()
        logger.info("medanpedia_order_placing", service=code, quantity=quantity)
        try:
            payload = await self._post(
                "order",
                service=code,
                target=target,
                quantity=quantity,
                custom_comments=custom_comments or None,
                custom_link=custom_link or None,
            )
        except ProviderTransportError as e:
            logger.error("medanpedia_order_transport_error", service=code, error=str(e))
            self._record("place_order", ProviderStatus.ERROR.value, start_time)
            return OrderPlacement(status=ProviderStatus.ERROR, message=str(e) or "Connection Error")

        message = str(payload.get("msg") or "")
        if payload.get("status") is not True:
            self._record("place_order", ProviderStatus.FAILED.value, start_time)
            logger.warning("medanpedia_order_rejected", service=code, msg=message)
            return OrderPlacement(
                status=ProviderStatus.FAILED,
                message=message or "Failed to create order",
                raw=payload,
            )

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        if not data.get("id"):
            # Accepted without an order id: cannot be tracked, outcome unknown.
            self._record("place_order", ProviderStatus.ERROR.value, start_time)
            logger.error("medanpedia_order_missing_id", service=code)
            return OrderPlacement(
                status=ProviderStatus.ERROR,
                message=message or "Order response carried no id",
                raw=payload,
            )

        self._record("place_order", ProviderStatus.PROCESSING.value, start_time)
        logger.info("medanpedia_order_placed", service=code, provider_order_id=str(data["id"]))
        return OrderPlacement(
            status=ProviderStatus.PROCESSING,
            message=message or "Order created",
            provider_order_id=str(data["id"]),
            raw=payload,
        )

    async def _status(self, endpoint: str, operation: str, **fields: Any) -> StatusCheck:
        start_time = time.time()
        try:
            payload = await self._post_idempotent(endpoint, **fields)
        except ProviderTransportError as e:
            logger.warning("medanpedia_status_transport_error", endpoint=endpoint, error=str(e))
            self._record(operation, ProviderStatus.ERROR.value, start_time)
            return StatusCheck(status=ProviderStatus.ERROR, message=str(e))

        decoded = decode_status(payload)
        if decoded.shape == StatusShape.ABSENT and payload.get("status") is False:
            message = str(payload.get("msg") or "Status request rejected")
            self._record(operation, ProviderStatus.FAILED.value, start_time)
            logger.warning("medanpedia_status_rejected", endpoint=endpoint, msg=message)
            raise ProviderLogicError(message, provider=self.code)

        status = map_status(decoded.raw_status)
        self._record(operation, status.value, start_time)
        logger.debug(
            "medanpedia_status_decoded",
            endpoint=endpoint,
            shape=decoded.shape.value,
            status=status.value,
        )
        return StatusCheck(
            status=status,
            original_status=decoded.raw_status,
            message=str(payload.get("msg") or ""),
            start_count=_to_int(decoded.data.get("start_count")),
            remains=_to_int(decoded.data.get("remains")),
        )

    async def check_status(self, reference: str) -> StatusCheck:
        """
        Status of upstream order ``reference``; transport failure yields ERROR.

        Raises:
            ProviderLogicError: If MedanPedia rejects the lookup, e.g. unknown id
        """
        return await self._status("status", "check_status", id=reference)

    async def request_refill(self, reference: str) -> RefillRequest:
        """
        Request a refill of upstream order ``reference``.

        Raises:
            ProviderTransportError: On network or parse failure
            ProviderLogicError: If MedanPedia refuses the refill
        """
        start_time = time.time()
        try:
            payload = await self._post("refill", id_order=reference)
        except ProviderTransportError:
            self._record("request_refill", ProviderStatus.ERROR.value, start_time)
            raise

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        if payload.get("status") is not True or not data.get("id_refill"):
            self._record("request_refill", ProviderStatus.FAILED.value, start_time)
            raise ProviderLogicError(
                str(payload.get("msg") or "Failed to request refill"), provider=self.code
            )

        self._record("request_refill", ProviderStatus.SUCCESS.value, start_time)
        return RefillRequest(
            refill_id=str(data["id_refill"]),
            message=str(payload.get("msg") or "Refill request submitted"),
        )

    async def check_refill_status(self, refill_id: str) -> StatusCheck:
        return await self._status("refill_status", "check_refill_status", id_refill=refill_id)

    async def check_balance(self) -> Decimal:
        """
        Fetch the account balance from the profile endpoint.

        Raises:
            ProviderTransportError: On network or parse failure
            ProviderLogicError: If MedanPedia rejects the request
        """
        start_time = time.time()
        try:
            payload = await self._post_idempotent("profile")
        except ProviderTransportError:
            self._record("check_balance", ProviderStatus.ERROR.value, start_time)
            raise

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        if payload.get("status") is not True or "balance" not in data:
            self._record("check_balance", ProviderStatus.FAILED.value, start_time)
            raise ProviderLogicError(
                str(payload.get("msg") or "Failed to check balance"), provider=self.code
            )
        self._record("check_balance", ProviderStatus.SUCCESS.value, start_time)
        return Decimal(str(data["balance"]))

    async def get_services(self) -> ServiceCatalog:
        """
        Fetch the full remote service list.

        Returns:
            ServiceCatalog: Raw service entries, flagged complete

        Raises:
            ProviderTransportError: On network or parse failure
            ProviderLogicError: If MedanPedia does not return a list
        """
        start_time = time.time()
        try:
            payload = await self._post_idempotent("services")
        except ProviderTransportError:
            self._record("get_services", ProviderStatus.ERROR.value, start_time)
            raise

        data = payload.get("data")
        if payload.get("status") is not True or not isinstance(data, list):
            self._record("get_services", ProviderStatus.FAILED.value, start_time)
            raise ProviderLogicError(
                str(payload.get("msg") or "Failed to fetch services"), provider=self.code
            )

        self._record("get_services", ProviderStatus.SUCCESS.value, start_time)
        logger.info("medanpedia_services_fetched", count=len(data))
        return ServiceCatalog(services=data, complete=True)
