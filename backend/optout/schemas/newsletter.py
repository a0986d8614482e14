from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from optout.models.newsletter import UnsubscribeReason

# Bounce, complaint and admin categories are assigned by the system, never by the recipient.
SELF_SERVICE_REASONS = frozenset({UnsubscribeReason.user_request, UnsubscribeReason.gdpr_request})


class NewsletterUnsubscribeRequest(BaseModel):
    email: EmailStr
    reason: str | None = Field(default=None, max_length=2000)
    reason_category: UnsubscribeReason = UnsubscribeReason.user_request
    feedback: str | None = Field(default=None, max_length=2000)

    @field_validator("reason_category")
    @classmethod
    def validate_reason_category(cls, value: UnsubscribeReason) -> UnsubscribeReason:
        if value not in SELF_SERVICE_REASONS:
            raise ValueError("reason_category must be user_request or gdpr_request")
        return value


class NewsletterUnsubscribeResponse(BaseModel):
    message: str
    resubscribe_token: str
    company_id: UUID | None = None
    notification_sent: bool = True


class NewsletterResubscribeRequest(BaseModel):
    email: EmailStr
    token: str = Field(min_length=1, max_length=256)


class NewsletterResubscribeResponse(BaseModel):
    message: str
    company_id: UUID | None = None
    notification_sent: bool = True


class NewsletterVerifyResponse(BaseModel):
    email: str
    company_name: str
    unsubscribe_date: datetime | None = None
    is_subscribed: bool
