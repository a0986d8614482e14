import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from optout.db.base import Base

DEFAULT_UNSUBSCRIBE_REASON = "User requested unsubscribe"


class UnsubscribeReason(str, enum.Enum):
    user_request = "user_request"
    bounce = "bounce"
    complaint = "complaint"
    admin_action = "admin_action"
    gdpr_request = "gdpr_request"


# Opt-outs in these categories cannot be undone with the resubscribe token.
LOCKED_UNSUBSCRIBE_REASONS = frozenset({UnsubscribeReason.complaint, UnsubscribeReason.gdpr_request})


class NewsletterSubscription(Base):
    """Opt-out state for one email address; absence of a row means subscribed."""

    __tablename__ = "newsletter_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    company_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_subscribed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reason: Mapped[UnsubscribeReason] = mapped_column(
        Enum(UnsubscribeReason, name="unsubscribe_reason"),
        nullable=False,
        default=UnsubscribeReason.user_request,
    )
    unsubscribe_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    can_resubscribe: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    unsubscribe_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resubscribe_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resubscribe_token: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
