"""
Prometheus metrics endpoint.

Exposes HTTP and webhook delivery metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Webhook Metrics
# ============================================

webhook_events_triggered = Counter(
    'webhook_events_triggered_total',
    'Total events recorded for webhook fan-out',
    ['event']
)

webhook_delivery_attempts = Counter(
    'webhook_delivery_attempts_total',
    'Total outbound webhook HTTP attempts',
    ['outcome']
)

webhook_delivery_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Duration of a single webhook delivery attempt',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

webhook_deliveries_exhausted = Counter(
    'webhook_deliveries_exhausted_total',
    'Deliveries that failed after all retries'
)

# ============================================
# Rate Limiting Metrics
# ============================================

rate_limit_exceeded = Counter(
    'rate_limit_exceeded_total',
    'Total requests blocked by rate limiting',
    ['org_id']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_event_triggered(event: str):
    """Record an event accepted for fan-out."""
    webhook_events_triggered.labels(event=event).inc()


def track_delivery_attempt(outcome: str, duration_ms: int):
    """Record one delivery attempt: outcome is success, http_error or transport_error."""
    webhook_delivery_attempts.labels(outcome=outcome).inc()
    webhook_delivery_duration.observe(duration_ms / 1000)


def track_delivery_exhausted():
    webhook_deliveries_exhausted.inc()


def track_rate_limit_exceeded(org_id: str):
    """Record a rate limit block."""
    rate_limit_exceeded.labels(org_id=org_id).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
