from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from optout.core.logging_config import mask_email
from optout.models.account import Company, User

logger = logging.getLogger(__name__)

UNKNOWN_COMPANY_NAME = "Unknown Company"


class DirectoryUnavailable(Exception):
    """The account lookup itself failed; the account may or may not exist."""


@dataclass(frozen=True)
class AccountLink:
    user_id: uuid.UUID
    company_id: uuid.UUID | None


async def find_account(session: AsyncSession, email: str) -> AccountLink | None:
    """Look up the account for ``email``.

    Returns None when no user has that email and raises ``DirectoryUnavailable``
    when the lookup could not be made.
    """
    cleaned = str(email or "").strip().lower()
    if not cleaned:
        return None
    try:
        user = await session.scalar(select(User).where(User.email == cleaned))
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("account_lookup_failed", extra={"email": mask_email(cleaned)}, exc_info=True)
        raise DirectoryUnavailable(cleaned) from exc
    if user is None:
        return None
    return AccountLink(user_id=user.id, company_id=user.company_id)


async def company_display_name(session: AsyncSession, company_id: uuid.UUID | None) -> str:
    if company_id is None:
        return UNKNOWN_COMPANY_NAME
    try:
        name = await session.scalar(select(Company.name).where(Company.id == company_id))
    except SQLAlchemyError:
        await session.rollback()
        logger.warning("company_lookup_failed", extra={"company_id": str(company_id)}, exc_info=True)
        return UNKNOWN_COMPANY_NAME
    return name or UNKNOWN_COMPANY_NAME
