"""
Error taxonomy of the payment reconciliation pipeline.

Each class carries the HTTP status the webhook route answers with so the
gateway can tell a rejection it should not retry from a failure it should.
"""


class ReconciliationError(Exception):
    """Base exception for webhook reconciliation failures."""

    status_code = 500
    reason = "error"

    def __init__(self, message: str, **context: object):
        super().__init__(message)
        self.message = message
        self.context = context


class ConfigurationError(ReconciliationError):
    """Gateway or provider credentials are missing or inactive."""

    status_code = 500
    reason = "configuration"


class VerificationError(ReconciliationError):
    """The gateway's own transaction record rejects or contradicts the webhook."""

    status_code = 403
    reason = "verification"


class GatewayTransportError(ReconciliationError):
    """The gateway could not be queried; the delivery is safe to retry."""

    status_code = 502
    reason = "gateway_transport"


class AmountMismatchError(ReconciliationError):
    """Paid amount differs from the expected amount beyond the tolerance."""

    status_code = 400
    reason = "amount_mismatch"


class NotFoundError(ReconciliationError):
    """The correlation id matches neither an order nor a deposit."""

    status_code = 404
    reason = "not_found"


class AlreadyProcessedError(ReconciliationError):
    """
    The idempotency gate found the aggregate already handled.

    Reported to the gateway as success.
    """

    status_code = 200
    reason = "already_processed"
