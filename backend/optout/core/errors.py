from __future__ import annotations

from fastapi import status


class NewsletterError(Exception):
    """Base error for the opt-out workflow; rendered as an ``ErrorResponse``."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "newsletter_error"
    default_detail: str = "Request failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(NewsletterError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"
    default_detail = "Missing required fields"


class AccountNotFoundError(NewsletterError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "account_not_found"
    default_detail = "User not found"


class InvalidTokenError(NewsletterError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "invalid_token"
    default_detail = "Invalid token"


class NotificationDeliveryError(NewsletterError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "notification_failed"
    default_detail = "Failed to send notification email"


class StorageError(NewsletterError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "storage_error"
    default_detail = "Storage unavailable"


class ResubscribeNotAllowedError(NewsletterError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "resubscribe_not_allowed"
    default_detail = "Resubscription not allowed for this email"
