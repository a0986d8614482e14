from __future__ import annotations

import secrets
from urllib.parse import urlencode

from optout.core.config import settings


def generate_token(byte_length: int | None = None) -> str:
    """Return ``byte_length`` random bytes from the OS CSPRNG as lowercase hex."""
    length = settings.newsletter_token_bytes if byte_length is None else int(byte_length)
    if length <= 0:
        raise ValueError("byte_length must be positive")
    return secrets.token_hex(length)


def build_frontend_resubscribe_url(*, email: str, token: str) -> str:
    query = urlencode({"email": email, "token": token})
    return f"{settings.frontend_origin.rstrip('/')}/newsletter/resubscribe?{query}"


def build_frontend_verify_url(*, token: str) -> str:
    return f"{settings.frontend_origin.rstrip('/')}/newsletter/unsubscribe?{urlencode({'token': token})}"
