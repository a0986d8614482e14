from __future__ import annotations

import enum
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from optout.core.errors import InvalidTokenError, StorageError
from optout.core.logging_config import mask_email
from optout.models.newsletter import (
    DEFAULT_UNSUBSCRIBE_REASON,
    LOCKED_UNSUBSCRIBE_REASONS,
    NewsletterSubscription,
    UnsubscribeReason,
)
from optout.services.tokens import generate_token

logger = logging.getLogger(__name__)


class SubscriptionState(str, enum.Enum):
    no_record = "no_record"
    subscribed = "subscribed"
    unsubscribed = "unsubscribed"


def normalize_email(email: str | None) -> str:
    return str(email or "").strip().lower()


def _clip(value: str | None, limit: int) -> str | None:
    cleaned = (value or "").strip()
    return cleaned[:limit] or None


async def find_by_email(session: AsyncSession, email: str) -> NewsletterSubscription | None:
    stmt = (
        select(NewsletterSubscription)
        .where(NewsletterSubscription.email == normalize_email(email))
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def find_by_email_and_token(session: AsyncSession, email: str, token: str) -> NewsletterSubscription | None:
    cleaned_email = normalize_email(email)
    cleaned_token = (token or "").strip()
    if not cleaned_email or not cleaned_token:
        return None
    stmt = (
        select(NewsletterSubscription)
        .where(
            NewsletterSubscription.email == cleaned_email,
            NewsletterSubscription.resubscribe_token == cleaned_token,
        )
        .execution_options(populate_existing=True)
    )
    try:
        return (await session.execute(stmt)).scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StorageError("Failed to look up subscription") from exc


async def find_by_token(session: AsyncSession, token: str) -> NewsletterSubscription | None:
    cleaned_token = (token or "").strip()
    if not cleaned_token:
        return None
    stmt = (
        select(NewsletterSubscription)
        .where(NewsletterSubscription.resubscribe_token == cleaned_token)
        .execution_options(populate_existing=True)
    )
    try:
        return (await session.execute(stmt)).scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StorageError("Failed to look up subscription") from exc


async def _upsert_via_conflict_stmt(session: AsyncSession, *, email: str, values: dict, insert_fn) -> None:
    stmt = insert_fn(NewsletterSubscription).values(id=uuid.uuid4(), email=email, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[NewsletterSubscription.email],
        set_={**values, "updated_at": func.now()},
    )
    await session.execute(stmt)
    await session.commit()


async def _upsert_fallback(session: AsyncSession, *, email: str, values: dict) -> None:
    existing = await find_by_email(session, email)
    if existing is None:
        existing = NewsletterSubscription(email=email)
    for key, value in values.items():
        setattr(existing, key, value)
    session.add(existing)
    try:
        await session.commit()
    except IntegrityError:
        # Lost the insert race; the row exists now, so apply the update to it.
        await session.rollback()
        existing = await find_by_email(session, email)
        if existing is None:
            raise
        for key, value in values.items():
            setattr(existing, key, value)
        session.add(existing)
        await session.commit()


async def upsert_unsubscribe(
    session: AsyncSession,
    email: str,
    reason: str | None = None,
    *,
    user_id: uuid.UUID | None = None,
    company_id: uuid.UUID | None = None,
    reason_category: UnsubscribeReason = UnsubscribeReason.user_request,
    feedback: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> NewsletterSubscription:
    """Create or refresh the opt-out row for ``email``; always issues a new token."""
    cleaned_email = normalize_email(email)
    values = {
        "user_id": user_id,
        "company_id": company_id,
        "is_subscribed": False,
        "reason": reason_category,
        "unsubscribe_reason": _clip(reason, 2000) or DEFAULT_UNSUBSCRIBE_REASON,
        "feedback": _clip(feedback, 2000),
        "can_resubscribe": reason_category not in LOCKED_UNSUBSCRIBE_REASONS,
        "unsubscribe_date": datetime.now(timezone.utc),
        "resubscribe_token": generate_token(),
        "ip_address": _clip(ip_address, 64),
        "user_agent": _clip(user_agent, 255),
    }
    try:
        bind = session.get_bind()
        dialect = getattr(getattr(bind, "dialect", None), "name", "")
        insert_fn = pg_insert if dialect == "postgresql" else (sqlite_insert if dialect == "sqlite" else None)
        if insert_fn is not None:
            await _upsert_via_conflict_stmt(session, email=cleaned_email, values=values, insert_fn=insert_fn)
        else:
            await _upsert_fallback(session, email=cleaned_email, values=values)
        record = await find_by_email(session, cleaned_email)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("newsletter_unsubscribe_write_failed", extra={"email": mask_email(cleaned_email)})
        raise StorageError("Failed to unsubscribe") from exc
    if record is None:
        raise StorageError("Failed to unsubscribe")
    return record


async def mark_resubscribed(session: AsyncSession, record: NewsletterSubscription) -> NewsletterSubscription:
    """Flip ``record`` back to subscribed and rotate its token.

    The update is conditional on the token still being the one that was
    presented, so two concurrent resubscribes cannot both consume it.
    """
    presented_token = record.resubscribe_token
    stmt = (
        update(NewsletterSubscription)
        .where(
            NewsletterSubscription.id == record.id,
            NewsletterSubscription.resubscribe_token == presented_token,
        )
        .values(
            is_subscribed=True,
            resubscribe_date=datetime.now(timezone.utc),
            resubscribe_token=generate_token(),
        )
        .execution_options(synchronize_session=False)
    )
    try:
        result = await session.execute(stmt)
        if result.rowcount != 1:
            await session.rollback()
            raise InvalidTokenError("Invalid resubscribe token")
        await session.commit()
        await session.refresh(record)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("newsletter_resubscribe_write_failed", extra={"email": mask_email(record.email)})
        raise StorageError("Failed to resubscribe") from exc
    return record


async def get_subscription_state(session: AsyncSession, email: str) -> SubscriptionState:
    try:
        record = await find_by_email(session, email)
    except (SQLAlchemyError, OSError) as exc:
        raise StorageError("Failed to read subscription state") from exc
    if record is None:
        return SubscriptionState.no_record
    return SubscriptionState.subscribed if record.is_subscribed else SubscriptionState.unsubscribed


async def is_subscribed(session: AsyncSession, email: str) -> bool:
    """Opt-out check for senders. Fails open: unknown state counts as subscribed."""
    try:
        state = await get_subscription_state(session, email)
    except StorageError:
        logger.warning("newsletter_subscription_check_failed", extra={"email": mask_email(email)}, exc_info=True)
        return True
    return state != SubscriptionState.unsubscribed


async def unsubscribe_stats(
    session: AsyncSession,
    *,
    since: datetime,
    until: datetime | None = None,
) -> dict[str, int]:
    end = until or datetime.now(timezone.utc)
    stmt = (
        select(NewsletterSubscription.reason, func.count(NewsletterSubscription.id))
        .where(
            NewsletterSubscription.unsubscribe_date.is_not(None),
            NewsletterSubscription.unsubscribe_date >= since,
            NewsletterSubscription.unsubscribe_date <= end,
        )
        .group_by(NewsletterSubscription.reason)
    )
    try:
        rows = (await session.execute(stmt)).all()
    except SQLAlchemyError as exc:
        raise StorageError("Failed to aggregate unsubscribes") from exc
    counts = {reason.value: 0 for reason in UnsubscribeReason}
    for reason, count in rows:
        key = reason.value if isinstance(reason, UnsubscribeReason) else str(reason)
        counts[key] = int(count)
    counts["total"] = sum(counts.values())
    return counts
