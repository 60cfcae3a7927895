"""
APIGames client (game top-ups).

Wire protocol:
- JSON POST for transactions, GET for status and merchant info
- Every transaction is signed with ``md5(merchant_id:secret_key:ref_id)``
- ``ref_id`` is the caller's idempotency token for one attempted order
"""
import hashlib
import time
from decimal import Decimal
from typing import Any, Dict, Optional

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
    StatusCheck,
)

logger = structlog.get_logger(__name__)

_PROCESSING_STATUSES = {"pending", "proses", "validasi provider"}


def map_transaction_status(payload: Dict[str, Any]) -> ProviderStatus:
    """
    Map a transaction response to the canonical status.

    ``status`` is the success flag (1); ``data.status`` the upstream text.
    """
    if payload.get("status") != 1:
        return ProviderStatus.FAILED
    data = payload.get("data") or {}
    upstream = str(data.get("status") or "").strip().lower()
    if upstream == "sukses":
        return ProviderStatus.SUCCESS
    if upstream == "gagal":
        return ProviderStatus.FAILED
    return ProviderStatus.PROCESSING


def map_status_text(raw_status: Optional[str]) -> ProviderStatus:
    """Map the status text returned by the status endpoint."""
    upstream = str(raw_status or "").strip().lower()
    if upstream == "sukses":
        return ProviderStatus.SUCCESS
    if upstream == "gagal":
        return ProviderStatus.FAILED
    if upstream in _PROCESSING_STATUSES:
        return ProviderStatus.PROCESSING
    return ProviderStatus.PENDING


class APIGamesClient(ProviderClient):
    """Signed JSON client for APIGames."""

    code = "APIGAMES"
    supports_refill = False

    def __init__(
        self,
        credentials: ProviderCredentials,
        http_client: httpx.AsyncClient,
        base_url: str = "https://v1.apigames.id",
        timeout: float = 30.0,
        max_attempts: int = 3,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize APIGames client.

        Args:
            credentials: Merchant id (``api_id``) and secret key (``api_key``)
            http_client: Shared HTTP client owned by the application
            base_url: API base URL
            timeout: Per-request timeout in seconds
            max_attempts: Attempts for idempotent reads
            circuit_breaker: Breaker shared by every client of this provider
        """
        self.merchant_id = credentials.api_id
        self.secret_key = credentials.api_key
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.code)

    def sign(self, ref_id: str) -> str:
        """Transaction signature: md5 of ``merchant_id:secret_key:ref_id``."""
        raw = f"{self.merchant_id}:{self.secret_key}:{ref_id}"
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    def _merchant_signature(self) -> str:
        raw = f"{self.merchant_id}{self.secret_key}"
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        async def _send() -> Dict[str, Any]:
            try:
                response = await self.http_client.request(
                    method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
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

    async def place_order(
        self,
        code: str,
        target: str,
        ref_id: str,
        server_id: str = "",
        **kwargs: Any,
    ) -> OrderPlacement:
        """
        Create a transaction.

        Args:
            code: APIGames product code
            target: Customer game id
            ref_id: Unique idempotency token for this attempt
            server_id: Optional game server id

        Returns:
            OrderPlacement: ERROR on transport failure, otherwise mapped status
        """
        start_time = time.time()
        body = {
            "ref_id": ref_id,
            "merchant_id": self.merchant_id,
            "produk": code,
            "tujuan": target,
            "server_id": server_id,
            "signature": self.sign(ref_id),
        }
        logger.info("apigames_order_placing", ref_id=ref_id, produk=code)

        try:
            payload = await self._request("POST", "/v2/transaksi", json=body)
        except ProviderTransportError as e:
            logger.error("apigames_order_transport_error", ref_id=ref_id, error=str(e))
            self._record("place_order", ProviderStatus.ERROR.value, start_time)
            return OrderPlacement(status=ProviderStatus.ERROR, message=str(e) or "Connection Error")

        status = map_transaction_status(payload)
        data = payload.get("data") or {}
        self._record("place_order", status.value, start_time)
        logger.info("apigames_order_placed", ref_id=ref_id, status=status.value)

        return OrderPlacement(
            status=status,
            message=data.get("message") or payload.get("error_msg") or "Unknown error",
            provider_order_id=str(data.get("trx_id") or ""),
            serial_number=str(data.get("sn") or ""),
            raw=payload,
        )

    async def check_status(self, reference: str) -> StatusCheck:
        """
        Check a transaction by ``ref_id``.

        Returns:
            StatusCheck: ERROR on transport failure, otherwise mapped status
        """
        start_time = time.time()
        params = {
            "merchant_id": self.merchant_id,
            "ref_id": reference,
            "signature": self.sign(reference),
        }

        @retry(
            retry=retry_if_exception_type(ProviderTransportError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            reraise=True,
        )
        async def _fetch() -> Dict[str, Any]:
            return await self._request("GET", "/v2/transaksi/status", params=params)

        try:
            payload = await _fetch()
        except ProviderTransportError as e:
            logger.warning("apigames_status_transport_error", ref_id=reference, error=str(e))
            self._record("check_status", ProviderStatus.ERROR.value, start_time)
            return StatusCheck(status=ProviderStatus.ERROR, message=str(e))

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        raw_status = data.get("status") or payload.get("status")
        if not isinstance(raw_status, str):
            raw_status = None
        status = map_status_text(raw_status)
        self._record("check_status", status.value, start_time)

        return StatusCheck(
            status=status,
            original_status=raw_status,
            message=str(data.get("message") or payload.get("message") or ""),
            serial_number=str(data.get("sn") or payload.get("sn") or ""),
        )

    async def check_balance(self) -> Decimal:
        """
        Fetch the merchant deposit balance.

        Raises:
            ProviderTransportError: On network or parse failure
            ProviderLogicError: If APIGames rejects the request
        """
        start_time = time.time()
        try:
            payload = await self._request(
                "GET",
                f"/merchant/{self.merchant_id}",
                params={"signature": self._merchant_signature()},
            )
        except ProviderTransportError:
            self._record("check_balance", ProviderStatus.ERROR.value, start_time)
            raise

        data = payload.get("data") or {}
        if payload.get("status") != 1 or "saldo" not in data:
            self._record("check_balance", ProviderStatus.FAILED.value, start_time)
            raise ProviderLogicError(
                payload.get("error_msg") or "Failed to check balance", provider=self.code
            )
        self._record("check_balance", ProviderStatus.SUCCESS.value, start_time)
        return Decimal(str(data["saldo"]))
