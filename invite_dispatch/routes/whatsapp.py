"""
WhatsApp invitation API routes.

Queue invitations, inspect jobs, retry failed invitations and control
the dispatch queue.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from invite_dispatch.database import get_db
from invite_dispatch.dependencies.dispatch import (
    get_dispatch_service,
    get_job_store,
    get_queue,
    get_retry_scheduler,
)
from invite_dispatch.errors import (
    EventNotFoundError,
    GuestValidationError,
    InvitationConflictError,
    InvitationNotFoundError,
    InvitationNotRetryableError,
    StoreTimeoutError,
    TemplateNotFoundError,
    TemplateValidationError,
)
from invite_dispatch.models.invitation import Invitation
from invite_dispatch.models.job import Job, JobPriority, JobType, Recipient
from invite_dispatch.routes import metrics
from invite_dispatch.services.dispatch_service import DispatchService
from invite_dispatch.services.invitation_service import InvitationService
from invite_dispatch.services.job_store import JobStore
from invite_dispatch.services.priority_queue import PriorityQueue
from invite_dispatch.services.retry_scheduler import RetryScheduler


router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])


# Pydantic models for request/response
class SendInvitationRequest(BaseModel):
    """Request model for queueing one invitation."""
    job_type: JobType = JobType.WHATSAPP_SEND
    priority: JobPriority = JobPriority.NORMAL
    recipient: Recipient
    template_name: str
    variables: dict[str, str] = {}


class BulkSendRequest(BaseModel):
    """Request model for queueing invitations to many guests of one event."""
    event_id: str
    guest_ids: list[str]
    template_name: str
    variables: dict[str, str] = {}
    priority: JobPriority = JobPriority.NORMAL
    job_type: JobType = JobType.WHATSAPP_SEND


class RetryRequest(BaseModel):
    """Optional overrides for a manual retry."""
    template_name: str | None = None
    variables: dict[str, str] | None = None
    priority: JobPriority = JobPriority.NORMAL


def _isoformat(value):
    return value.isoformat() if value else None


def job_to_response(job: Job) -> dict:
    """Public view of a job record."""
    return {
        "job_id": job.id,
        "job_type": job.job_type.value,
        "priority": job.priority.value,
        "status": job.status.value,
        "attempts": job.attempts,
        "max_retries": job.max_retries,
        "timestamps": {
            "created_at": _isoformat(job.created_at),
            "updated_at": _isoformat(job.updated_at),
            "processed_at": _isoformat(job.processed_at),
            "completed_at": _isoformat(job.completed_at),
            "failed_at": _isoformat(job.failed_at),
            "next_retry_at": _isoformat(job.next_retry_at),
        },
        "error": job.error,
        "error_code": job.error_code,
        "result": job.result,
    }


def invitation_to_response(invitation: Invitation) -> dict:
    return {
        "id": invitation.id,
        "event_id": invitation.event_id,
        "guest_id": invitation.guest_id,
        "channel": invitation.channel,
        "status": invitation.provider_status,
        "provider_message_id": invitation.provider_message_id,
        "template_name": invitation.template_name,
        "error_code": invitation.error_code,
        "error_message": invitation.error_message,
        "retry_count": invitation.retry_count,
        "max_retries": invitation.max_retries,
        "queued_at": _isoformat(invitation.queued_at),
        "sent_at": _isoformat(invitation.sent_at),
        "delivered_at": _isoformat(invitation.delivered_at),
        "read_at": _isoformat(invitation.read_at),
        "failed_at": _isoformat(invitation.failed_at),
        "next_retry_at": _isoformat(invitation.next_retry_at),
    }


def _store_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Queue store unavailable. Please try again."
    )


@router.post("/send-invitation", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def send_invitation(
    request: SendInvitationRequest,
    service: DispatchService = Depends(get_dispatch_service),
):
    """
    Queue one invitation.

    Returns immediately with the job id; the worker sends it.
    """
    try:
        job = await service.enqueue_message(
            request.recipient,
            request.template_name,
            request.variables,
            job_type=request.job_type,
            priority=request.priority,
        )
    except TemplateNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Template not found"
        )
    except TemplateValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except StoreTimeoutError:
        raise _store_unavailable()

    return {
        "job_id": job.id,
        "status": job.status.value,
        "priority": job.priority.value,
    }


@router.get("/status/{job_id}", response_model=dict)
async def get_job_status(
    job_id: str,
    job_store: JobStore = Depends(get_job_store),
):
    """Get a job's status. Records expire 24 hours after their last update."""
    try:
        job = await job_store.get(job_id)
    except StoreTimeoutError:
        raise _store_unavailable()

    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )
    return job_to_response(job)


@router.post("/retry/{invitation_id}", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def retry_invitation(
    invitation_id: str,
    request: RetryRequest | None = None,
    service: DispatchService = Depends(get_dispatch_service),
):
    """
    Re-send a failed invitation.

    The template, variables and priority may be replaced for the new attempt.
    """
    request = request or RetryRequest()
    try:
        job = await service.retry_invitation(
            invitation_id,
            template_name=request.template_name,
            variables=request.variables,
            priority=request.priority,
        )
    except InvitationNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Invitation not found"
        )
    except InvitationNotRetryableError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except TemplateNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Template not found"
        )
    except TemplateValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except StoreTimeoutError:
        raise _store_unavailable()

    return {
        "job_id": job.id,
        "invitation_id": invitation_id,
        "status": job.status.value,
    }


@router.get("/retry/{invitation_id}", response_model=dict)
async def check_retry(
    invitation_id: str,
    service: DispatchService = Depends(get_dispatch_service),
):
    """Report whether an invitation can be retried."""
    try:
        return await service.check_retry(invitation_id)
    except InvitationNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Invitation not found"
        )


@router.post("/send-bulk", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def send_bulk(
    request: BulkSendRequest,
    service: DispatchService = Depends(get_dispatch_service),
):
    """
    Queue invitations for up to 100 guests of one event.

    Each guest's ``guest_name`` and ``event_name`` are filled in unless
    ``variables`` sets them.
    """
    try:
        jobs = await service.send_bulk(
            request.event_id,
            request.guest_ids,
            request.template_name,
            request.variables,
            priority=request.priority,
            job_type=request.job_type,
        )
    except EventNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Event not found"
        )
    except GuestValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except InvitationConflictError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(e), "guest_ids": e.guest_ids}
        )
    except TemplateNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Template not found"
        )
    except TemplateValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except StoreTimeoutError:
        raise _store_unavailable()

    return {
        "job_ids": [job.id for job in jobs],
        "count": len(jobs),
    }


@router.get("/invitations/{event_id}", response_model=dict)
async def list_invitations(
    event_id: str,
    db: AsyncSession = Depends(get_db),
):
    """All invitations for an event with a per-status summary."""
    service = InvitationService(db)
    invitations = await service.list_by_event(event_id)
    summary = await service.status_counts(event_id)
    return {
        "event_id": event_id,
        "total": len(invitations),
        "summary": summary,
        "invitations": [invitation_to_response(i) for i in invitations],
    }


@router.get("/queue/stats", response_model=dict)
async def queue_stats(
    job_type: JobType = JobType.WHATSAPP_SEND,
    queue: PriorityQueue = Depends(get_queue),
    retry_scheduler: RetryScheduler = Depends(get_retry_scheduler),
):
    """Queue depth per priority, pending retries and pause state."""
    try:
        depths = await queue.stats(job_type)
        paused = await queue.is_paused(job_type)
        pending_retries = await retry_scheduler.pending_retries()
    except StoreTimeoutError:
        raise _store_unavailable()

    metrics.update_queue_depth(job_type.value, depths)
    return {
        "job_type": job_type.value,
        "queues": depths,
        "pending_retries": pending_retries,
        "paused": paused,
    }


@router.post("/queue/pause", response_model=dict)
async def pause_queue(
    job_type: JobType = JobType.WHATSAPP_SEND,
    queue: PriorityQueue = Depends(get_queue),
):
    """Stop dispatching a job type. The pause lifts itself after an hour."""
    await queue.pause(job_type)
    return {"job_type": job_type.value, "paused": True}


@router.post("/queue/resume", response_model=dict)
async def resume_queue(
    job_type: JobType = JobType.WHATSAPP_SEND,
    queue: PriorityQueue = Depends(get_queue),
):
    """Resume dispatching a job type."""
    await queue.resume(job_type)
    return {"job_type": job_type.value, "paused": False}
