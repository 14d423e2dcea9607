"""
Prometheus metrics module for Meetbook.

Service timings come from the @measure_operation decorator; the domain
counters below track booking transitions, slot holds and ledger settlement.
"""

from threading import Lock
from time import monotonic
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "meetbook_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "meetbook_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "meetbook_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

booking_transitions_total = Counter(
    "meetbook_booking_transitions_total",
    "Booking state machine outcomes",
    ["event", "to_status", "outcome"],  # outcome: applied | rejected | stale
    registry=REGISTRY,
)

slot_hold_attempts_total = Counter(
    "meetbook_slot_hold_attempts_total",
    "Slot hold attempts by outcome",
    ["outcome"],  # held | rejected
    registry=REGISTRY,
)

slot_holds_expired_total = Counter(
    "meetbook_slot_holds_expired_total",
    "Slot holds reverted to OPEN after their grace period",
    registry=REGISTRY,
)

ledger_instructions_total = Counter(
    "meetbook_ledger_instructions_total",
    "Ledger instructions by kind and outcome",
    ["kind", "outcome"],  # acknowledged | retrying | escalated
    registry=REGISTRY,
)

ledger_call_duration_seconds = Histogram(
    "meetbook_ledger_call_duration_seconds",
    "Ledger call duration in seconds",
    ["kind"],
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

escrow_manual_intervention_total = Counter(
    "meetbook_escrow_manual_intervention_total",
    "Escrow records flagged for manual intervention after exhausted retries",
    ["kind"],
    registry=REGISTRY,
)

escrow_sweep_last_run_timestamp = Gauge(
    "meetbook_escrow_sweep_last_run_timestamp",
    "Unix time of the last completed escrow sweep",
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _cache_lock: Lock = Lock()
    _cache_payload: Optional[bytes] = None
    _cache_ts: Optional[float] = None
    _cache_ttl_seconds: float = 1.0

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingService')
            operation: Operation/method name (e.g., 'create_booking')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_booking_transition(event: str, to_status: str, outcome: str) -> None:
        booking_transitions_total.labels(event=event, to_status=to_status, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_slot_hold(outcome: str) -> None:
        slot_hold_attempts_total.labels(outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_slot_holds_expired(count: int = 1) -> None:
        if count > 0:
            slot_holds_expired_total.inc(count)
            PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_ledger_instruction(
        kind: str, outcome: str, duration: Optional[float] = None
    ) -> None:
        ledger_instructions_total.labels(kind=kind, outcome=outcome).inc()
        if duration is not None:
            ledger_call_duration_seconds.labels(kind=kind).observe(max(duration, 0.0))
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_manual_intervention(kind: str) -> None:
        """The operational alert raised when a ledger instruction exhausts its retries."""
        escrow_manual_intervention_total.labels(kind=kind).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def mark_sweep_completed(timestamp: float) -> None:
        escrow_sweep_last_run_timestamp.set(timestamp)
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        now = monotonic()
        payload = PrometheusMetrics._cache_payload
        ts = PrometheusMetrics._cache_ts
        ttl = PrometheusMetrics._cache_ttl_seconds
        if payload is not None and ts is not None and (now - ts) <= ttl:
            return payload

        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_payload = cast(bytes, generate_latest(REGISTRY))
            PrometheusMetrics._cache_ts = monotonic()
            return PrometheusMetrics._cache_payload

    @staticmethod
    def get_content_type() -> str:
        """Get the content type for Prometheus metrics."""
        return cast(str, CONTENT_TYPE_LATEST)

    @staticmethod
    def _invalidate_cache() -> None:
        """Invalidate cached metrics so next scrape refreshes."""
        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_ts = None
            PrometheusMetrics._cache_payload = None


# Singleton instance
prometheus_metrics = PrometheusMetrics()
