from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from receipt_nest.core.config import settings
from receipt_nest.core.logging import get_logger, log_event
from receipt_nest.modules.identity.models import SubscriptionPlan, User
from receipt_nest.modules.receipts.models import Receipt

logger = get_logger(__name__)


def get_user(session: Session, *, user_id: uuid.UUID) -> User | None:
    return session.scalar(select(User).where(User.id == user_id))


def get_user_by_email(session: Session, *, email: str) -> User | None:
    return session.scalar(select(User).where(User.email == email))


def create_user(
    session: Session,
    *,
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
    subscription_plan: SubscriptionPlan = SubscriptionPlan.FREE,
    telegram_chat_id: int | None = None,
) -> User:
    existing = get_user_by_email(session, email=email)
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")

    user = User(
        email=email,
        first_name=first_name,
        last_name=last_name,
        subscription_plan=subscription_plan,
        telegram_chat_id=telegram_chat_id,
        is_active=True,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def find_user_by_telegram_chat_id(session: Session, *, chat_id: int) -> User | None:
    return session.scalar(select(User).where(User.telegram_chat_id == chat_id))


def count_user_receipts(session: Session, *, user_id: uuid.UUID) -> int:
    return int(
        session.scalar(
            select(func.count()).select_from(Receipt).where(Receipt.user_id == user_id)
        )
        or 0
    )


def can_user_accept_new_receipt(session: Session, *, user: User) -> bool:
    if user.subscription_plan == SubscriptionPlan.PRO:
        return True
    count = count_user_receipts(session, user_id=user.id)
    allowed = count < settings.free_plan_receipt_limit
    if not allowed:
        log_event(
            logger,
            "quota.receipt_cap.reached",
            user_id=str(user.id),
            receipt_count=count,
            limit=settings.free_plan_receipt_limit,
        )
    return allowed
