"""
Dispatch service: turns invitation requests into queued jobs.

Covers single sends, bulk sends, manual retries of failed invitations,
the sweep that re-sends invitations the webhook reconciler scheduled for
retry, and the retention sweep.
"""
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from invite_dispatch.config import settings
from invite_dispatch.errors import (
    DispatchError,
    EventNotFoundError,
    GuestValidationError,
    InvitationConflictError,
    InvitationNotFoundError,
    InvitationNotRetryableError,
)
from invite_dispatch.models.base import utcnow
from invite_dispatch.models.guest import Event, Guest
from invite_dispatch.models.invitation import ProviderStatus
from invite_dispatch.models.job import Job, JobPriority, JobType, PAYLOAD_TYPES, Recipient
from invite_dispatch.routes import metrics
from invite_dispatch.services import error_classifier
from invite_dispatch.services.invitation_service import InvitationService
from invite_dispatch.services.priority_queue import PriorityQueue
from invite_dispatch.services.template_service import TemplateService, render

logger = structlog.get_logger()

MAX_BULK_GUESTS = 100

CHANNEL_BY_JOB_TYPE = {
    JobType.WHATSAPP_SEND: "whatsapp",
    JobType.SMS_SEND: "sms",
}


def job_type_for_channel(channel: str | None) -> JobType:
    return JobType.SMS_SEND if channel == "sms" else JobType.WHATSAPP_SEND


class DispatchService:
    """Creates invitation jobs and keeps the invitation record in step."""

    def __init__(self, db: AsyncSession, queue: PriorityQueue):
        self.db = db
        self.queue = queue
        self.templates = TemplateService(db)
        self.invitations = InvitationService(db)

    async def enqueue_message(
        self,
        recipient: Recipient,
        template_name: str,
        variables: dict[str, str],
        job_type: JobType = JobType.WHATSAPP_SEND,
        priority: JobPriority = JobPriority.NORMAL,
        retry_at: datetime | None = None,
    ) -> Job:
        """
        Validate the template, mark the invitation pending and queue a job.

        If the queue write fails the invitation is marked failed again
        (keeping ``retry_at`` as its next retry) and the error propagates.
        Raises TemplateNotFoundError or TemplateValidationError.
        """
        job_type = JobType(job_type)
        template = await self.templates.validate(template_name, variables)

        invitation = await self.invitations.upsert_pending(
            event_id=recipient.event_id,
            guest_id=recipient.guest_id,
            template_name=template_name,
            variables=variables,
            rendered_content=render(template.content, variables),
            to_number=recipient.phone,
            channel=CHANNEL_BY_JOB_TYPE[job_type],
        )

        payload_cls = PAYLOAD_TYPES[job_type]
        job = Job(
            job_type=job_type,
            priority=priority,
            payload=payload_cls(recipient=recipient, template_name=template_name, variables=variables),
            max_retries=settings.QUEUE_MAX_RETRIES,
        )
        try:
            await self.queue.enqueue(job)
        except Exception as exc:
            logger.error(
                "invitation_enqueue_failed",
                invitation_id=invitation.id,
                job_id=job.id,
                error=str(exc),
            )
            await self.invitations.record_enqueue_failure(
                invitation, error_classifier.NETWORK_ERROR.user_message, retry_at=retry_at
            )
            raise
        metrics.track_job_queued(job_type.value, JobPriority(priority).value)
        return job

    async def send_bulk(
        self,
        event_id: str,
        guest_ids: list[str],
        template_name: str,
        variables: dict[str, str] | None = None,
        priority: JobPriority = JobPriority.NORMAL,
        job_type: JobType = JobType.WHATSAPP_SEND,
    ) -> list[Job]:
        """
        Queue one job per guest.

        Every guest must belong to the event and have a phone number, and
        none may already have a pending invitation for this template. Each
        guest's variables start from ``guest_name``/``event_name`` and are
        overridden by ``variables``.
        """
        guest_ids = list(dict.fromkeys(guest_ids))
        if not guest_ids:
            raise GuestValidationError("At least one guest is required")
        if len(guest_ids) > MAX_BULK_GUESTS:
            raise GuestValidationError(f"Maximum {MAX_BULK_GUESTS} guests per bulk send")

        event = await self.db.get(Event, event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")

        result = await self.db.execute(
            select(Guest).where(Guest.id.in_(guest_ids), Guest.event_id == event_id)
        )
        guests = {guest.id: guest for guest in result.scalars().all()}

        unknown = [guest_id for guest_id in guest_ids if guest_id not in guests]
        if unknown:
            raise GuestValidationError(f"Guests not found for this event: {', '.join(unknown)}")

        without_phone = [guests[guest_id].name for guest_id in guest_ids if not guests[guest_id].phone]
        if without_phone:
            raise GuestValidationError(f"Guests without phone numbers: {', '.join(without_phone)}")

        conflicts = await self.invitations.find_pending(guest_ids, template_name)
        if conflicts:
            raise InvitationConflictError([invitation.guest_id for invitation in conflicts])

        await self.templates.require_template(template_name)

        jobs = []
        for guest_id in guest_ids:
            guest = guests[guest_id]
            guest_variables = {"guest_name": guest.name, "event_name": event.name}
            guest_variables.update(variables or {})
            jobs.append(await self.enqueue_message(
                Recipient(guest_id=guest.id, event_id=event_id, phone=guest.phone),
                template_name,
                guest_variables,
                job_type=job_type,
                priority=priority,
            ))

        logger.info("bulk_send_queued", event_id=event_id, template_name=template_name, count=len(jobs))
        return jobs

    async def check_retry(self, invitation_id: str) -> dict:
        """Whether an invitation may be retried by hand."""
        invitation = await self.invitations.get_by_id(invitation_id)
        if invitation is None:
            raise InvitationNotFoundError(f"Invitation {invitation_id} not found")

        can_retry = invitation.provider_status == ProviderStatus.FAILED.value
        return {
            "invitation_id": invitation.id,
            "can_retry": can_retry,
            "status": invitation.provider_status,
            "retry_count": invitation.retry_count,
            "max_retries": invitation.max_retries,
            "error_code": invitation.error_code,
            "error_message": invitation.error_message,
            "reason": None if can_retry else "Only failed invitations can be retried",
        }

    async def retry_invitation(
        self,
        invitation_id: str,
        template_name: str | None = None,
        variables: dict[str, str] | None = None,
        priority: JobPriority = JobPriority.NORMAL,
    ) -> Job:
        """
        Re-send a failed invitation, optionally with another template or variables.

        Raises InvitationNotFoundError or InvitationNotRetryableError.
        """
        invitation = await self.invitations.get_by_id(invitation_id)
        if invitation is None:
            raise InvitationNotFoundError(f"Invitation {invitation_id} not found")
        if invitation.provider_status != ProviderStatus.FAILED.value:
            raise InvitationNotRetryableError(invitation.id, invitation.provider_status)

        job = await self._resend(invitation, template_name, variables, priority)
        logger.info("invitation_retry_queued", invitation_id=invitation.id, job_id=job.id)
        return job

    async def requeue_due_invitations(self, now: datetime | None = None, limit: int = 50) -> int:
        """
        Re-send failed invitations whose ``next_retry_at`` has passed.

        Returns the number of invitations queued.
        """
        now = now or utcnow()
        queued = 0
        for invitation in await self.invitations.due_for_retry(now, limit=limit):
            due_at = invitation.next_retry_at
            if not await self.invitations.claim_retry(invitation):
                continue
            try:
                job = await self._resend(invitation, None, None, JobPriority.NORMAL, retry_at=due_at)
            except DispatchError as exc:
                logger.warning("invitation_retry_skipped", invitation_id=invitation.id, reason=str(exc))
                continue
            logger.info(
                "invitation_retry_requeued",
                invitation_id=invitation.id,
                job_id=job.id,
                retry_count=invitation.retry_count,
            )
            queued += 1
        return queued

    async def purge_expired_invitations(self, retention_days: int | None = None,
                                        now: datetime | None = None) -> int:
        """Delete invitations older than the retention window; 0 days keeps everything."""
        retention_days = settings.INVITATION_RETENTION_DAYS if retention_days is None else retention_days
        if retention_days <= 0:
            return 0
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        deleted = await self.invitations.purge_older_than(cutoff)
        if deleted:
            logger.info("invitations_purged", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted

    async def _resend(self, invitation, template_name, variables, priority, retry_at=None) -> Job:
        recipient = Recipient(
            guest_id=invitation.guest_id,
            event_id=invitation.event_id,
            phone=invitation.to_number or "",
        )
        return await self.enqueue_message(
            recipient,
            template_name or invitation.template_name,
            variables if variables is not None else dict(invitation.template_variables or {}),
            job_type=job_type_for_channel(invitation.channel),
            priority=priority,
            retry_at=retry_at,
        )
