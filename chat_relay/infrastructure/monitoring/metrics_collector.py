#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

Delivery metrics for the relay:
- Publishes and publish failures per exchange
- Consumed deliveries by outcome (acked, retried, dead_lettered, discarded)
- Handler latency per queue
- Circuit breaker states and failures
- Admission control rejections
- Dead-letter sweep outcomes and parked record count
- Replay log appends and acks

Architectural Decision: prometheus-client for industry-standard metrics

Author: Senior Solution Architect
Date: 2025-12-05
"""


from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from chat_relay.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Metric Definitions
# ============================================================================

MESSAGES_PUBLISHED = Counter(
    'relay_messages_published_total',
    'Messages published to the broker',
    ['exchange']
)

PUBLISH_FAILURES = Counter(
    'relay_publish_failures_total',
    'Publishes rejected or failed',
    ['exchange', 'reason']
)

DELIVERIES = Counter(
    'relay_deliveries_total',
    'Consumed deliveries by final outcome',
    ['queue', 'outcome']  # acked, retried, dead_lettered, discarded
)

HANDLER_DURATION = Histogram(
    'relay_handler_duration_seconds',
    'Business handler duration',
    ['queue'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

CIRCUIT_BREAKER_STATE = Gauge(
    'relay_circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=half_open, 2=open)',
    ['breaker']
)

CIRCUIT_BREAKER_FAILURES = Counter(
    'relay_circuit_breaker_failures_total',
    'Failures recorded by circuit breakers',
    ['breaker']
)

ADMISSION_REJECTED = Counter(
    'relay_admission_rejected_total',
    'Outbound sends rejected by admission control',
    ['reason']  # duplicate, rate-limited
)

DLQ_PARKED = Counter(
    'relay_dlq_parked_total',
    'Records parked in the dead-letter store',
    ['error_type']
)

DLQ_SWEEP_OUTCOMES = Counter(
    'relay_dlq_sweep_outcomes_total',
    'Dead-letter sweep outcomes',
    ['outcome']  # retried, failed, discarded
)

DLQ_SIZE = Gauge(
    'relay_dlq_records',
    'Parked dead-letter records seen by the last sweep'
)

STREAM_APPENDS = Counter(
    'relay_stream_appends_total',
    'Entries appended to the replay log',
    ['stream', 'status']
)

STREAM_ACKS = Counter(
    'relay_stream_acks_total',
    'Replay log entries acknowledged after storage',
    ['stream']
)

_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    Usage:
        metrics = MetricsCollector()
        metrics.record_delivery("relay.send.commands", "acked")
        output = metrics.get_prometheus_metrics()
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        logger.info("Metrics collector initialized", stage="M.0", enabled=enabled)

    # Broker

    def record_published(self, exchange: str) -> None:
        if self.enabled:
            MESSAGES_PUBLISHED.labels(exchange=exchange or "default").inc()

    def record_publish_failure(self, exchange: str, reason: str) -> None:
        if self.enabled:
            PUBLISH_FAILURES.labels(exchange=exchange or "default", reason=reason).inc()

    # Consumption

    def record_delivery(self, queue: str, outcome: str) -> None:
        if self.enabled:
            DELIVERIES.labels(queue=queue, outcome=outcome).inc()

    def record_handler_duration(self, queue: str, duration_seconds: float) -> None:
        if self.enabled:
            HANDLER_DURATION.labels(queue=queue).observe(duration_seconds)

    # Circuit breakers

    def set_circuit_state(self, breaker: str, state: str) -> None:
        if self.enabled:
            CIRCUIT_BREAKER_STATE.labels(breaker=breaker).set(_STATE_VALUES.get(state, 0))

    def record_circuit_failure(self, breaker: str) -> None:
        if self.enabled:
            CIRCUIT_BREAKER_FAILURES.labels(breaker=breaker).inc()

    # Admission

    def record_admission_rejected(self, reason: str) -> None:
        if self.enabled:
            ADMISSION_REJECTED.labels(reason=reason).inc()

    # Dead letters

    def record_dlq_parked(self, error_type: str) -> None:
        if self.enabled:
            DLQ_PARKED.labels(error_type=error_type).inc()

    def record_dlq_sweep(self, retried: int, failed: int, discarded: int, seen: int) -> None:
        if not self.enabled:
            return
        DLQ_SWEEP_OUTCOMES.labels(outcome="retried").inc(retried)
        DLQ_SWEEP_OUTCOMES.labels(outcome="failed").inc(failed)
        DLQ_SWEEP_OUTCOMES.labels(outcome="discarded").inc(discarded)
        DLQ_SIZE.set(seen)

    # Replay log

    def record_stream_append(self, stream: str, success: bool) -> None:
        if self.enabled:
            STREAM_APPENDS.labels(stream=stream, status="success" if success else "failure").inc()

    def record_stream_ack(self, stream: str) -> None:
        if self.enabled:
            STREAM_ACKS.labels(stream=stream).inc()

    # Export

    def get_prometheus_metrics(self) -> bytes:
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


_metrics_collector: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """
    Process-wide collector for code paths built without the runtime
    (scripts, ad-hoc tools). The runtime passes its own instance explicitly.
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector
