"""
Prometheus metrics for the payment-link service.

Tracks:
- Payment links issued / invalidated
- Payment initiations by outcome
- Gateway callbacks by mapped status
- Unknown gateway statuses held for manual review
- Compare-and-swap conflicts
- Notification delivery
"""
from prometheus_client import Counter, Histogram

payment_links_total = Counter(
    "payment_links_total",
    "Payment link lifecycle events",
    ["target", "action"],  # target: order, milestone; action: generated, invalidated
)

payment_initiations_total = Counter(
    "payment_initiations_total",
    "Payment initiations",
    ["target", "status"],  # status: accepted, rejected
)

payment_amount = Histogram(
    "payment_amount",
    "Initiated payment amounts in major currency units",
    ["currency"],
    buckets=(50, 100, 500, 1000, 2500, 5000, 10000, 50000, 100000),
)

callback_events_total = Counter(
    "callback_events_total",
    "Gateway callbacks processed",
    ["gateway_status", "result"],  # result: applied, duplicate, rejected
)

callback_processing_duration_seconds = Histogram(
    "callback_processing_duration_seconds",
    "Gateway callback processing duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

callback_dedup_hits_total = Counter(
    "callback_dedup_hits_total",
    "Callbacks short-circuited by the dedup cache",
)

unknown_gateway_status_total = Counter(
    "unknown_gateway_status_total",
    "Callbacks with a gateway status outside the known vocabulary",
)

callback_contract_deviations_total = Counter(
    "callback_contract_deviations_total",
    "Callbacks delivered under a non-canonical field or location",
    ["field", "source"],
)

concurrent_update_conflicts_total = Counter(
    "concurrent_update_conflicts_total",
    "Compare-and-swap conflicts on service requests",
    ["operation"],
)

payment_link_emails_total = Counter(
    "payment_link_emails_total",
    "Payment link notification emails",
    ["status"],  # sent, failed, disabled
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_link(target: str, action: str) -> None:
        payment_links_total.labels(target=target, action=action).inc()

    @staticmethod
    def record_initiation(target: str, status: str, currency: str = "", amount: float = 0) -> None:
        """Record a payment initiation attempt."""
        payment_initiations_total.labels(target=target, status=status).inc()
        if amount > 0:
            payment_amount.labels(currency=currency).observe(amount)

    @staticmethod
    def record_callback(gateway_status: str, result: str, duration_seconds: float) -> None:
        """Record gateway callback processing."""
        callback_events_total.labels(gateway_status=gateway_status, result=result).inc()
        callback_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_dedup_hit() -> None:
        callback_dedup_hits_total.inc()

    @staticmethod
    def record_unknown_status() -> None:
        unknown_gateway_status_total.inc()

    @staticmethod
    def record_contract_deviation(field: str, source: str) -> None:
        callback_contract_deviations_total.labels(field=field, source=source).inc()

    @staticmethod
    def record_concurrent_update(operation: str) -> None:
        concurrent_update_conflicts_total.labels(operation=operation).inc()

    @staticmethod
    def record_email(status: str) -> None:
        payment_link_emails_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
