from fastapi import APIRouter, Depends, Path, Request
from sqlalchemy.ext.asyncio import AsyncSession

from optout.core.config import settings
from optout.core.rate_limit import client_ip, per_identifier_limiter
from optout.db.session import get_session
from optout.schemas.newsletter import (
    NewsletterResubscribeRequest,
    NewsletterResubscribeResponse,
    NewsletterUnsubscribeRequest,
    NewsletterUnsubscribeResponse,
    NewsletterVerifyResponse,
)
from optout.services import newsletter as newsletter_service

router = APIRouter(prefix="/newsletter", tags=["newsletter"])

unsubscribe_rate_limit = per_identifier_limiter(
    client_ip,
    settings.newsletter_rate_limit,
    settings.newsletter_rate_window_seconds,
    key="newsletter:unsubscribe",
)
resubscribe_rate_limit = per_identifier_limiter(
    client_ip,
    settings.newsletter_rate_limit,
    settings.newsletter_rate_window_seconds,
    key="newsletter:resubscribe",
)
verify_rate_limit = per_identifier_limiter(
    client_ip,
    settings.newsletter_rate_limit,
    settings.newsletter_rate_window_seconds,
    key="newsletter:verify",
)


@router.post(
    "/unsubscribe",
    response_model=NewsletterUnsubscribeResponse,
    dependencies=[Depends(unsubscribe_rate_limit)],
)
async def unsubscribe_newsletter(
    payload: NewsletterUnsubscribeRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> NewsletterUnsubscribeResponse:
    result = await newsletter_service.unsubscribe(
        session,
        payload.email,
        payload.reason,
        reason_category=payload.reason_category,
        feedback=payload.feedback,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return NewsletterUnsubscribeResponse(
        message="Successfully unsubscribed from newsletter",
        resubscribe_token=result.resubscribe_token,
        company_id=result.company_id,
        notification_sent=result.notification_sent,
    )


@router.post(
    "/resubscribe",
    response_model=NewsletterResubscribeResponse,
    dependencies=[Depends(resubscribe_rate_limit)],
)
async def resubscribe_newsletter(
    payload: NewsletterResubscribeRequest,
    session: AsyncSession = Depends(get_session),
) -> NewsletterResubscribeResponse:
    result = await newsletter_service.resubscribe(session, payload.email, payload.token)
    return NewsletterResubscribeResponse(
        message="Successfully resubscribed to newsletter",
        company_id=result.company_id,
        notification_sent=result.notification_sent,
    )


@router.get(
    "/unsubscribe/{token}",
    response_model=NewsletterVerifyResponse,
    dependencies=[Depends(verify_rate_limit)],
)
async def verify_unsubscribe_token(
    token: str = Path(min_length=1, max_length=256),
    session: AsyncSession = Depends(get_session),
) -> NewsletterVerifyResponse:
    result = await newsletter_service.verify_token(session, token)
    return NewsletterVerifyResponse(
        email=result.email,
        company_name=result.company_name,
        unsubscribe_date=result.unsubscribe_date,
        is_subscribed=result.is_subscribed,
    )
