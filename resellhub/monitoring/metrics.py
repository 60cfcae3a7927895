"""
Prometheus metrics for reconciliation monitoring.

Tracks:
- Webhook deliveries by aggregate and outcome
- Wallet ledger mutations
- Provider API calls and circuit breaker state
- Catalog sync results
- Fulfillment failures
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total payment webhook deliveries received",
    ["gateway"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total payment webhook deliveries processed",
    ["aggregate", "outcome"],  # outcome: credited, processing, canceled, already_processed, ...
)

webhook_rejections_total = Counter(
    "webhook_rejections_total",
    "Total payment webhook deliveries rejected",
    ["reason"],  # verification, amount_mismatch, not_found, configuration, timeout
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0),
)

# Ledger metrics
wallet_mutations_total = Counter(
    "wallet_mutations_total",
    "Total wallet balance mutations",
    ["type"],
)

wallet_mutation_amount = Histogram(
    "wallet_mutation_amount",
    "Absolute wallet mutation amounts",
    buckets=(1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000),
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total provider API requests",
    ["provider", "operation", "status"],
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Catalog sync metrics
catalog_sync_changes_total = Counter(
    "catalog_sync_changes_total",
    "Catalog rows changed by sync",
    ["change"],  # product_created, variant_created, variant_updated, product_deleted
)

catalog_sync_duration_seconds = Histogram(
    "catalog_sync_duration_seconds",
    "Catalog sync duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300),
)

catalog_sync_last_run_timestamp = Gauge(
    "catalog_sync_last_run_timestamp",
    "Timestamp of last completed catalog sync",
)

catalog_cleanup_skipped_total = Counter(
    "catalog_cleanup_skipped_total",
    "Catalog cleanups skipped by the safety guard",
    ["reason"],
)

# Fulfillment metrics
fulfillment_failures_total = Counter(
    "fulfillment_failures_total",
    "Paid orders whose fulfillment call failed",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_received(gateway: str) -> None:
        webhook_events_received_total.labels(gateway=gateway).inc()

    @staticmethod
    def record_webhook_processed(aggregate: str, outcome: str, duration_seconds: float) -> None:
        """Record a webhook that reached an outcome."""
        webhook_events_processed_total.labels(aggregate=aggregate, outcome=outcome).inc()
        webhook_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_webhook_rejected(reason: str) -> None:
        webhook_rejections_total.labels(reason=reason).inc()

    @staticmethod
    def record_wallet_mutation(transaction_type: str, amount: float) -> None:
        """Record a ledger balance mutation."""
        wallet_mutations_total.labels(type=transaction_type).inc()
        wallet_mutation_amount.observe(abs(amount))

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_api_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_catalog_sync(
        products_created: int,
        variants_created: int,
        variants_updated: int,
        products_deleted: int,
        duration_seconds: float,
    ) -> None:
        """Record catalog sync results."""
        catalog_sync_changes_total.labels(change="product_created").inc(products_created)
        catalog_sync_changes_total.labels(change="variant_created").inc(variants_created)
        catalog_sync_changes_total.labels(change="variant_updated").inc(variants_updated)
        catalog_sync_changes_total.labels(change="product_deleted").inc(products_deleted)
        catalog_sync_duration_seconds.observe(duration_seconds)
        catalog_sync_last_run_timestamp.set(time.time())

    @staticmethod
    def record_cleanup_skipped(reason: str) -> None:
        catalog_cleanup_skipped_total.labels(reason=reason).inc()

    @staticmethod
    def record_fulfillment_failure() -> None:
        fulfillment_failures_total.inc()


# Export singleton instance
metrics = MetricsCollector()
