"""
Shared contract of upstream provider clients.

Both providers speak different wire protocols and status vocabularies; the
clients normalise them into ``ProviderStatus`` so everything above this
boundary drives one state machine.
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from resellhub.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ProviderStatus(str, Enum):
    """Canonical status taxonomy."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    ERROR = "ERROR"  # Transport/parse failure: retry, never treat as FAILED

    @property
    def is_terminal(self) -> bool:
        return self in (ProviderStatus.SUCCESS, ProviderStatus.FAILED)


class ProviderError(Exception):
    """Base exception for provider failures."""

    def __init__(self, message: str, provider: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.provider = provider
        self.original_error = original_error


class ProviderTransportError(ProviderError):
    """Network or parse failure; the remote outcome is unknown."""

    pass


class ProviderLogicError(ProviderError):
    """The upstream explicitly reported a failure."""

    pass


class RefillNotSupportedError(ProviderLogicError):
    """The provider has no refill endpoint."""

    pass


@dataclass(frozen=True)
class OrderPlacement:
    """Normalised result of placing an order upstream."""

    status: ProviderStatus
    message: str = ""
    provider_order_id: str = ""
    serial_number: str = ""
    raw: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.status not in (ProviderStatus.FAILED, ProviderStatus.ERROR)


@dataclass(frozen=True)
class StatusCheck:
    """Normalised status of an upstream order or refill."""

    status: ProviderStatus
    original_status: Optional[str] = None
    message: str = ""
    serial_number: str = ""
    start_count: Optional[int] = None
    remains: Optional[int] = None


@dataclass(frozen=True)
class RefillRequest:
    refill_id: str
    message: str = ""


@dataclass(frozen=True)
class ProviderCredentials:
    """Credentials read from a ``ProviderConfig`` row."""

    code: str
    api_id: str
    api_key: str = field(repr=False)
    margin_percent: Optional[float] = None


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        provider: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            provider: Provider code, used for logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.provider, state)

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute coroutine function with circuit breaker protection.

        Only transport errors count as failures; an upstream that answers
        with a logical error is healthy.

        Raises:
            ProviderTransportError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", provider=self.provider)
            else:
                raise ProviderTransportError("Circuit breaker is open", provider=self.provider)

        try:
            result = await func()
        except ProviderTransportError:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", provider=self.provider)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.provider,
                failure_count=self.failure_count,
            )


class ProviderClient(ABC):
    """Operations every upstream provider client exposes."""

    code: str = ""
    supports_refill: bool = False
    # True when orders are tracked by the caller's ``ref_id``, False when by
    # the upstream order id.
    uses_caller_reference: bool = True

    @abstractmethod
    async def place_order(self, **kwargs: Any) -> OrderPlacement:
        """Place an order upstream. Transport failure yields ERROR, not FAILED."""

    @abstractmethod
    async def check_status(self, reference: str) -> StatusCheck:
        """Fetch the normalised status of an upstream order."""

    async def request_refill(self, reference: str) -> RefillRequest:
        raise RefillNotSupportedError(
            f"{self.code} does not support refills", provider=self.code
        )

    @abstractmethod
    async def check_balance(self) -> Decimal:
        """Return the account balance held at the provider."""

    @staticmethod
    def _elapsed(start_time: float) -> float:
        return time.time() - start_time

    def _record(self, operation: str, status: str, start_time: float) -> None:
        metrics.record_provider_call(self.code, operation, status, self._elapsed(start_time))
