"""
ARQ background worker for invitation dispatch.

Runs the dispatcher and the sweeps as cron jobs. The key/value store
reuses ARQ's own Redis connection.

Start with: arq invite_dispatch.worker.WorkerSettings
"""
from functools import wraps

import structlog
from arq import cron
from arq.connections import RedisSettings

from invite_dispatch.config import settings
from invite_dispatch.database import AsyncSessionLocal
from invite_dispatch.logging_config import configure_logging
from invite_dispatch.models.job import JobType
from invite_dispatch.routes import metrics
from invite_dispatch.sentry_config import capture_exception, configure_sentry
from invite_dispatch.services.dispatch_service import DispatchService
from invite_dispatch.services.dispatcher import Dispatcher
from invite_dispatch.services.invitation_service import InvitationService
from invite_dispatch.services.job_handlers import MessageJobHandler
from invite_dispatch.services.job_store import JobStore
from invite_dispatch.services.kv_store import RedisStore
from invite_dispatch.services.priority_queue import PriorityQueue
from invite_dispatch.services.rate_limiter import RateLimiter
from invite_dispatch.services.retry_scheduler import RetryScheduler
from invite_dispatch.services.send_adapter import SendAdapter, create_twilio_client
from invite_dispatch.services.template_service import TemplateService

logger = structlog.get_logger()


def reported(func):
    """Send cron failures to Sentry; ARQ still logs and records them."""
    @wraps(func)
    async def wrapper(ctx: dict):
        try:
            return await func(ctx)
        except Exception:
            logger.exception("worker_task_failed", task=func.__name__)
            capture_exception()
            raise
    return wrapper


async def startup(ctx: dict):
    configure_logging()
    configure_sentry()

    store = RedisStore(ctx["redis"])
    job_store = JobStore(store)
    queue = PriorityQueue(store, job_store)

    ctx["store"] = store
    ctx["job_store"] = job_store
    ctx["queue"] = queue
    ctx["rate_limiter"] = RateLimiter(store)
    ctx["retry_scheduler"] = RetryScheduler(store, job_store, queue)
    ctx["twilio"] = create_twilio_client()
    logger.info("worker_started", redis=settings.REDIS_URL)


async def shutdown(ctx: dict):
    # The store wraps ARQ's connection; ARQ closes it
    logger.info("worker_stopped")


@reported
async def dispatch_tick(ctx: dict) -> int:
    """Drain up to DISPATCH_BATCH_SIZE jobs of each type."""
    processed = 0
    for job_type in JobType:
        dispatcher = Dispatcher(
            ctx["queue"],
            ctx["job_store"],
            ctx["rate_limiter"],
            ctx["retry_scheduler"],
            job_type=job_type,
        )
        async with AsyncSessionLocal() as db:
            adapter = SendAdapter(ctx["twilio"], InvitationService(db), TemplateService(db))
            jobs = await dispatcher.drain(MessageJobHandler(adapter))
        processed += len(jobs)
        metrics.update_queue_depth(job_type.value, await ctx["queue"].stats(job_type))
    return processed


@reported
async def process_due_retries(ctx: dict) -> int:
    return await ctx["retry_scheduler"].process_due_retries()


@reported
async def recover_stalled_jobs(ctx: dict) -> int:
    """Settle jobs whose processing lease expired without an outcome."""
    return await ctx["retry_scheduler"].recover_stalled_jobs()


@reported
async def requeue_failed_invitations(ctx: dict) -> int:
    """Re-send invitations the webhook reconciler scheduled for retry."""
    async with AsyncSessionLocal() as db:
        return await DispatchService(db, ctx["queue"]).requeue_due_invitations()


@reported
async def purge_invitations(ctx: dict) -> int:
    async with AsyncSessionLocal() as db:
        return await DispatchService(db, ctx["queue"]).purge_expired_invitations()


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq invite_dispatch.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    on_startup = startup
    on_shutdown = shutdown
    job_timeout = 300
    cron_jobs = [
        cron(dispatch_tick, second=None, timeout=60),
        cron(process_due_retries, second={0, 10, 20, 30, 40, 50}),
        cron(recover_stalled_jobs, second={5, 35}),
        cron(requeue_failed_invitations, second=0),
        cron(purge_invitations, hour=3, minute=0, second=0),
    ]
