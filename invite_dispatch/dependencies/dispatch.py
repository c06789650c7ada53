"""
Dispatch pipeline dependencies for FastAPI routes.

The key/value store is created once at startup and kept on app.state;
everything else is built per request around it.
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from invite_dispatch.database import get_db
from invite_dispatch.services.dispatch_service import DispatchService
from invite_dispatch.services.invitation_service import InvitationService
from invite_dispatch.services.job_store import JobStore
from invite_dispatch.services.kv_store import KeyValueStore
from invite_dispatch.services.priority_queue import PriorityQueue
from invite_dispatch.services.retry_scheduler import RetryScheduler
from invite_dispatch.services.webhook_reconciler import WebhookReconciler


async def get_store(request: Request) -> KeyValueStore:
    return request.app.state.store


async def get_job_store(store: KeyValueStore = Depends(get_store)) -> JobStore:
    return JobStore(store)


async def get_queue(
    store: KeyValueStore = Depends(get_store),
    job_store: JobStore = Depends(get_job_store),
) -> PriorityQueue:
    return PriorityQueue(store, job_store)


async def get_retry_scheduler(
    store: KeyValueStore = Depends(get_store),
    job_store: JobStore = Depends(get_job_store),
    queue: PriorityQueue = Depends(get_queue),
) -> RetryScheduler:
    return RetryScheduler(store, job_store, queue)


async def get_dispatch_service(
    db: AsyncSession = Depends(get_db),
    queue: PriorityQueue = Depends(get_queue),
) -> DispatchService:
    return DispatchService(db, queue)


async def get_webhook_reconciler(db: AsyncSession = Depends(get_db)) -> WebhookReconciler:
    return WebhookReconciler(InvitationService(db))
