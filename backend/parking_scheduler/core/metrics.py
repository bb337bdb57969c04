"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Reservation metrics
reservation_attempts = Counter(
    'reservation_attempts_total',
    'Total reservation attempts',
    ['status']  # success, conflict, error
)

allocation_retries = Counter(
    'allocation_retry_attempts_total',
    'Capacity allocation retries due to parking lot version conflicts'
)

# Waitlist metrics
waitlist_operations = Counter(
    'waitlist_operations_total',
    'Waitlist operations',
    ['operation']  # join, leave, promote, convert, demote, expire
)

# Notification metrics
notification_sends = Counter(
    'notification_sends_total',
    'Notification delivery attempts',
    ['result']  # sent, failed, expired
)

# Scheduler metrics
tick_runs = Counter(
    'scheduler_tick_runs_total',
    'Scheduler tick executions',
    ['tick', 'result']  # completed, aborted
)

tick_latency = Histogram(
    'scheduler_tick_latency_seconds',
    'Scheduler tick duration',
    ['tick'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0]
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )

# Convenience functions for instrumentation
def record_reservation_attempt(status: str):
    """Record reservation attempt. Status: success, conflict, error"""
    reservation_attempts.labels(status=status).inc()

def record_waitlist_operation(operation: str):
    waitlist_operations.labels(operation=operation).inc()

def record_notification_send(result: str, count: int = 1):
    """Record a delivery attempt. Result: sent, failed, expired"""
    notification_sends.labels(result=result).inc(count)

def record_tick(tick: str, result: str, duration: float):
    tick_runs.labels(tick=tick, result=result).inc()
    tick_latency.labels(tick=tick).observe(duration)
