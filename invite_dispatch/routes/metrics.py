"""
Prometheus metrics endpoint.

Exposes dispatch pipeline metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

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
# Job Metrics
# ============================================

jobs_queued = Counter(
    'dispatch_jobs_queued_total',
    'Total jobs queued',
    ['job_type', 'priority']
)

jobs_completed = Counter(
    'dispatch_jobs_completed_total',
    'Total jobs completed successfully',
    ['job_type']
)

jobs_failed = Counter(
    'dispatch_jobs_failed_total',
    'Total jobs failed permanently',
    ['job_type', 'category']
)

jobs_retry_total = Counter(
    'dispatch_jobs_retry_total',
    'Total job retries scheduled',
    ['job_type', 'category']
)

jobs_lost = Counter(
    'dispatch_jobs_lost_total',
    'Queue entries whose job record had expired',
    ['job_type']
)

send_duration = Histogram(
    'dispatch_send_duration_seconds',
    'Provider send call duration in seconds',
    ['job_type'],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0]
)

# ============================================
# Queue Metrics
# ============================================

job_queue_depth = Gauge(
    'dispatch_queue_depth',
    'Current number of queued job ids',
    ['job_type', 'priority']
)

# ============================================
# Rate Limiting Metrics
# ============================================

rate_limit_exceeded = Counter(
    'dispatch_rate_limit_exceeded_total',
    'Total dispatch attempts deferred by rate limiting',
    ['job_type']
)

# ============================================
# Webhook Metrics
# ============================================

webhook_callbacks = Counter(
    'provider_webhook_callbacks_total',
    'Provider status callbacks by outcome',
    ['status', 'outcome']
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


def track_job_queued(job_type: str, priority: str):
    """Record a job being queued."""
    jobs_queued.labels(job_type=job_type, priority=priority).inc()


def track_job_completed(job_type: str):
    """Record a job completing successfully."""
    jobs_completed.labels(job_type=job_type).inc()


def track_job_failed(job_type: str, category: str):
    """Record a job failing permanently."""
    jobs_failed.labels(job_type=job_type, category=category).inc()


def track_job_retry(job_type: str, category: str):
    """Record a job retry being scheduled."""
    jobs_retry_total.labels(job_type=job_type, category=category).inc()


def track_job_lost(job_type: str):
    jobs_lost.labels(job_type=job_type).inc()


def track_send_duration(job_type: str, duration_seconds: float):
    send_duration.labels(job_type=job_type).observe(duration_seconds)


def update_queue_depth(job_type: str, depths: dict[str, int]):
    """Update queued id count per priority."""
    for priority, depth in depths.items():
        if priority != "total":
            job_queue_depth.labels(job_type=job_type, priority=priority).set(depth)


def track_rate_limit_exceeded(job_type: str):
    """Record a rate limit block."""
    rate_limit_exceeded.labels(job_type=job_type).inc()


def track_webhook_callback(status: str, outcome: str):
    """Record a provider callback and what happened to it."""
    webhook_callbacks.labels(status=status, outcome=outcome).inc()


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
