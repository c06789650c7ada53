"""
Invitation service: reads and writes Invitation audit records.

The send adapter writes per-attempt state; the webhook reconciler applies
provider status through ``apply_status``, a conditional UPDATE that only
moves status forward.
"""
from datetime import datetime
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from invite_dispatch.models.base import utcnow
from invite_dispatch.models.invitation import Invitation, ProviderStatus, statuses_below


class InvitationService:
    """Service for managing invitation records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, invitation_id: str) -> Invitation | None:
        return await self.db.get(Invitation, invitation_id)

    async def get_by_event_guest(self, event_id: str, guest_id: str) -> Invitation | None:
        stmt = select(Invitation).where(
            Invitation.event_id == event_id,
            Invitation.guest_id == guest_id,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_provider_message_id(self, message_id: str) -> Invitation | None:
        stmt = select(Invitation).where(Invitation.provider_message_id == message_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_event(self, event_id: str) -> list[Invitation]:
        stmt = select(Invitation).where(Invitation.event_id == event_id).order_by(Invitation.created_at)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def status_counts(self, event_id: str) -> dict[str, int]:
        stmt = (
            select(Invitation.provider_status, func.count(Invitation.id))
            .where(Invitation.event_id == event_id)
            .group_by(Invitation.provider_status)
        )
        result = await self.db.execute(stmt)
        counts = {status.value: 0 for status in ProviderStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def find_pending(self, guest_ids: list[str], template_name: str) -> list[Invitation]:
        """Invitations already waiting to be sent with this template."""
        stmt = select(Invitation).where(
            Invitation.guest_id.in_(guest_ids),
            Invitation.template_name == template_name,
            Invitation.provider_status == ProviderStatus.PENDING.value,
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def upsert_pending(
        self,
        event_id: str,
        guest_id: str,
        template_name: str,
        variables: dict[str, str],
        rendered_content: str,
        to_number: str | None,
        channel: str = "whatsapp",
    ) -> Invitation:
        """
        Create the invitation or reset it for a new attempt.

        A new attempt clears the previous provider id, timestamps and error,
        keeping retry bookkeeping.
        """
        invitation = await self.get_by_event_guest(event_id, guest_id)
        if invitation is None:
            invitation = Invitation(event_id=event_id, guest_id=guest_id)
            self.db.add(invitation)

        invitation.channel = channel
        invitation.to_number = to_number
        invitation.template_name = template_name
        invitation.template_variables = dict(variables)
        invitation.rendered_content = rendered_content
        invitation.provider_status = ProviderStatus.PENDING.value
        invitation.provider_message_id = None
        invitation.error_code = None
        invitation.error_message = None
        invitation.queued_at = utcnow()
        invitation.sent_at = None
        invitation.delivered_at = None
        invitation.read_at = None
        invitation.failed_at = None
        invitation.next_retry_at = None

        await self.db.commit()
        return invitation

    async def record_submission(self, invitation: Invitation, provider_message_id: str) -> Invitation:
        """Provider accepted the message."""
        invitation.provider_message_id = provider_message_id
        invitation.provider_status = ProviderStatus.SENT.value
        invitation.sent_at = utcnow()
        await self.db.commit()
        return invitation

    async def record_send_failure(self, invitation: Invitation, error_code: int | None,
                                  error_message: str) -> Invitation:
        """Provider rejected the message synchronously."""
        invitation.provider_status = ProviderStatus.FAILED.value
        invitation.error_code = str(error_code) if error_code is not None else None
        invitation.error_message = error_message
        invitation.failed_at = utcnow()
        await self.db.commit()
        return invitation

    async def record_enqueue_failure(self, invitation: Invitation, error_message: str,
                                     retry_at: datetime | None = None) -> Invitation:
        """
        The job never reached the queue; the invitation must not stay pending.

        ``retry_at`` puts a claimed retry back for the next sweep.
        """
        invitation.provider_status = ProviderStatus.FAILED.value
        invitation.error_code = None
        invitation.error_message = error_message
        invitation.failed_at = utcnow()
        invitation.next_retry_at = retry_at
        await self.db.commit()
        return invitation

    async def apply_status(self, invitation: Invitation, status: ProviderStatus, values: dict) -> bool:
        """
        Move ``invitation`` to ``status`` only if its stored status ranks lower.

        The check runs inside the UPDATE, so concurrent or out-of-order
        callbacks can never move status backwards. Returns False when the
        update was stale and discarded.
        """
        stmt = (
            update(Invitation)
            .where(
                Invitation.id == invitation.id,
                Invitation.provider_status.in_(statuses_below(status)),
            )
            .values(provider_status=status.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        await self.db.refresh(invitation)
        return result.rowcount == 1

    async def due_for_retry(self, now: datetime, limit: int = 50) -> list[Invitation]:
        """Failed invitations whose scheduled retry time has passed."""
        stmt = (
            select(Invitation)
            .where(
                Invitation.provider_status == ProviderStatus.FAILED.value,
                Invitation.next_retry_at.is_not(None),
                Invitation.next_retry_at <= now,
            )
            .order_by(Invitation.next_retry_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def claim_retry(self, invitation: Invitation) -> bool:
        """
        Take a due retry so only one sweep re-sends it.

        Clears ``next_retry_at`` conditionally; False means another sweep
        (or a manual retry) got there first.
        """
        stmt = (
            update(Invitation)
            .where(
                Invitation.id == invitation.id,
                Invitation.provider_status == ProviderStatus.FAILED.value,
                Invitation.next_retry_at.is_not(None),
            )
            .values(next_retry_at=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        await self.db.refresh(invitation)
        return result.rowcount == 1

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Retention sweep: delete invitations last touched before ``cutoff``."""
        stmt = (
            delete(Invitation)
            .where(Invitation.updated_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount
