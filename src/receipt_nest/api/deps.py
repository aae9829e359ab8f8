from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from receipt_nest.core.db import db_session
from receipt_nest.core.logging import set_user_context
from receipt_nest.core.security import decode_access_token
from receipt_nest.modules.identity.models import User
from receipt_nest.modules.identity.service import get_user

bearer_scheme = HTTPBearer(auto_error=False)

_UNAUTHORIZED_HEADERS = {"WWW-Authenticate": "Bearer"}


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED, detail=detail, headers=_UNAUTHORIZED_HEADERS
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: Session = Depends(db_session),
) -> User:
    """Receipt owner identified by the bearer token's subject."""
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Not authenticated")

    subject = decode_access_token(credentials.credentials)
    try:
        user_id = uuid.UUID(subject or "")
    except ValueError as e:
        raise _unauthorized("Invalid token") from e

    user = get_user(session, user_id=user_id)
    if user is None:
        raise _unauthorized("Invalid user")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled")
    set_user_context(str(user.id))
    return user
