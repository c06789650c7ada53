"""
Message template model.

Content holds ``{{ name }}`` placeholders; ``variables`` lists the ones a
send must supply.
"""
import uuid
from sqlalchemy import String, Text, Boolean, JSON
from sqlalchemy.orm import Mapped, mapped_column
from invite_dispatch.models.base import Base, TimestampMixin


class MessageTemplate(Base, TimestampMixin):
    """Stored message body with named placeholders."""
    __tablename__ = "message_templates"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    variables: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self):
        return f"<MessageTemplate(name={self.name}, active={self.is_active})>"
