"""
Invitation model: audit record of one recipient's message for one event.

Updated in place on every send attempt and every provider status
callback; only the retention sweep deletes rows.
"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from invite_dispatch.models.base import Base, TimestampMixin, utcnow


class ProviderStatus(str, enum.Enum):
    """Reconciled delivery status."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# A callback only applies when its rank is higher than the stored one.
# failed shares delivered's rank: a delivered message never becomes failed
# and a failed one only moves on if the provider reports it read.
STATUS_RANK: dict[ProviderStatus, int] = {
    ProviderStatus.PENDING: 0,
    ProviderStatus.SENT: 1,
    ProviderStatus.DELIVERED: 2,
    ProviderStatus.FAILED: 2,
    ProviderStatus.READ: 3,
}


def statuses_below(status: ProviderStatus) -> list[str]:
    """Stored statuses a callback with ``status`` may overwrite."""
    rank = STATUS_RANK[status]
    return [s.value for s, r in STATUS_RANK.items() if r < rank]


class Invitation(Base, TimestampMixin):
    """One outbound message to one guest for one event."""
    __tablename__ = "whatsapp_invitations"
    __table_args__ = (
        UniqueConstraint("event_id", "guest_id", name="uq_invitation_event_guest"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    event_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    guest_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="whatsapp")
    to_number: Mapped[str | None] = mapped_column(String(40), nullable=True)

    provider_message_id: Mapped[str | None] = mapped_column(
        String(64), unique=True, nullable=True, index=True
    )
    provider_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProviderStatus.PENDING.value
    )
    error_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    template_name: Mapped[str] = mapped_column(String(100), nullable=False)
    template_variables: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    rendered_content: Mapped[str | None] = mapped_column(Text, nullable=True)

    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Invitation(id={self.id}, guest={self.guest_id}, status={self.provider_status})>"
