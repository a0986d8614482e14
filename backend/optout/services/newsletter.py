"""Unsubscribe / resubscribe / verify workflow for newsletter recipients.

An email is SUBSCRIBED when it has no opt-out row or its row has
``is_subscribed`` set, and UNSUBSCRIBED otherwise. Leaving the UNSUBSCRIBED
state requires the row's current resubscribe token, which is rotated every
time it is consumed. Rows unsubscribed for a complaint or a GDPR request
keep their token but refuse resubscription.

State changes are committed before the notification email goes out. When
``settings.newsletter_notification_required`` is set, a failed send is
reported to the caller as ``NotificationDeliveryError`` even though the
change itself has been stored.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable

from sqlalchemy.ext.asyncio import AsyncSession

from optout.core import metrics
from optout.core.config import settings
from optout.core.errors import (
    AccountNotFoundError,
    InvalidTokenError,
    NotificationDeliveryError,
    ResubscribeNotAllowedError,
    ValidationError,
)
from optout.core.logging_config import mask_email
from optout.models.newsletter import UnsubscribeReason
from optout.services import accounts
from optout.services import email as email_service
from optout.services import subscriptions, tokens

logger = logging.getLogger(__name__)


@dataclass
class UnsubscribeResult:
    success: bool
    resubscribe_token: str
    company_id: uuid.UUID | None = None
    notification_sent: bool = True


@dataclass
class ResubscribeResult:
    success: bool
    company_id: uuid.UUID | None = None
    notification_sent: bool = True


@dataclass
class VerificationResult:
    success: bool
    email: str
    company_name: str
    unsubscribe_date: datetime | None
    is_subscribed: bool


async def _notify(send: Awaitable[bool], *, email: str, kind: str) -> bool:
    # A send skipped because SMTP is disabled still counts as delivered.
    try:
        await send
    except NotificationDeliveryError:
        metrics.record_notification_failure()
        if settings.newsletter_notification_required:
            logger.error("newsletter_notification_failed", extra={"email": mask_email(email), "kind": kind})
            raise
        logger.warning("newsletter_notification_skipped", extra={"email": mask_email(email), "kind": kind})
        return False
    return True


async def unsubscribe(
    session: AsyncSession,
    email: str | None,
    reason: str | None = None,
    *,
    reason_category: UnsubscribeReason = UnsubscribeReason.user_request,
    feedback: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> UnsubscribeResult:
    cleaned_email = subscriptions.normalize_email(email)
    if not cleaned_email:
        raise ValidationError("Email is required")

    try:
        account = await accounts.find_account(session, cleaned_email)
    except accounts.DirectoryUnavailable:
        # The opt-out is still honored, just without an account link.
        account = None
    else:
        if account is None and not settings.newsletter_allow_anonymous_unsubscribe:
            raise AccountNotFoundError("User not found")

    record = await subscriptions.upsert_unsubscribe(
        session,
        cleaned_email,
        reason,
        user_id=account.user_id if account else None,
        company_id=account.company_id if account else None,
        reason_category=reason_category,
        feedback=feedback,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    token = record.resubscribe_token
    metrics.record_unsubscribe()
    logger.info(
        "newsletter_unsubscribed",
        extra={"email": mask_email(cleaned_email), "reason_category": reason_category.value, "linked": bool(account)},
    )

    resubscribe_url = tokens.build_frontend_resubscribe_url(email=cleaned_email, token=token)
    sent = await _notify(
        email_service.send_unsubscribe_confirmation(
            cleaned_email, resubscribe_url=resubscribe_url, company_id=record.company_id
        ),
        email=cleaned_email,
        kind="unsubscribe_confirmation",
    )
    return UnsubscribeResult(
        success=True,
        resubscribe_token=token,
        company_id=record.company_id,
        notification_sent=sent,
    )


async def resubscribe(session: AsyncSession, email: str | None, token: str | None) -> ResubscribeResult:
    cleaned_email = subscriptions.normalize_email(email)
    cleaned_token = (token or "").strip()
    if not cleaned_email or not cleaned_token:
        raise ValidationError("Email and token are required")

    record = await subscriptions.find_by_email_and_token(session, cleaned_email, cleaned_token)
    if record is None:
        metrics.record_invalid_token()
        raise InvalidTokenError("Invalid resubscribe token")
    if not record.can_resubscribe:
        logger.info("newsletter_resubscribe_blocked", extra={"email": mask_email(cleaned_email)})
        raise ResubscribeNotAllowedError("Resubscription not allowed for this email")

    record = await subscriptions.mark_resubscribed(session, record)
    metrics.record_resubscribe()
    logger.info("newsletter_resubscribed", extra={"email": mask_email(cleaned_email)})

    sent = await _notify(
        email_service.send_resubscribe_welcome(cleaned_email, company_id=record.company_id),
        email=cleaned_email,
        kind="resubscribe_welcome",
    )
    return ResubscribeResult(success=True, company_id=record.company_id, notification_sent=sent)


async def verify_token(session: AsyncSession, token: str | None) -> VerificationResult:
    record = await subscriptions.find_by_token(session, token or "")
    if record is None:
        metrics.record_invalid_token()
        raise InvalidTokenError("Invalid token")

    company_name = await accounts.company_display_name(session, record.company_id)
    return VerificationResult(
        success=True,
        email=record.email,
        company_name=company_name,
        unsubscribe_date=record.unsubscribe_date,
        is_subscribed=record.is_subscribed,
    )


async def is_subscribed(session: AsyncSession, email: str) -> bool:
    return await subscriptions.is_subscribed(session, email)
