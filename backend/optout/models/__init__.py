from optout.db.base import Base  # noqa: F401
from optout.models.account import Company, User  # noqa: F401
from optout.models.newsletter import NewsletterSubscription, UnsubscribeReason  # noqa: F401

__all__ = [
    "Base",
    "Company",
    "User",
    "NewsletterSubscription",
    "UnsubscribeReason",
]
