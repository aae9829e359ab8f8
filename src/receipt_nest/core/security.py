from __future__ import annotations

import hmac
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from receipt_nest.core.config import settings

ALGORITHM = "HS256"
TOKEN_TYPE = "access"


def create_access_token(*, subject: str, expires_minutes: int | None = None) -> str:
    minutes = expires_minutes or settings.access_token_exp_minutes
    payload: dict[str, Any] = {
        "sub": subject,
        "typ": TOKEN_TYPE,
        "exp": datetime.now(UTC) + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> str | None:
    """Subject of a valid, unexpired access token; None for anything else."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != TOKEN_TYPE:
        return None
    subject = payload.get("sub")
    return subject if isinstance(subject, str) else None


def webhook_key_matches(provided: str | None, expected: str) -> bool:
    return hmac.compare_digest((provided or "").encode("utf-8"), expected.encode("utf-8"))
