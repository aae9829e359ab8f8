from __future__ import annotations

import receipt_nest.models  # noqa: F401
from receipt_nest.core.config import settings
from receipt_nest.core.db import SessionLocal, engine
from receipt_nest.core.logging import get_logger, log_event
from receipt_nest.core.models import Base
from receipt_nest.modules.identity.models import SubscriptionPlan
from receipt_nest.modules.identity.service import create_user, get_user_by_email

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.environment == "dev" and str(settings.database_url).startswith("sqlite"):
        Base.metadata.create_all(engine)

    email = (settings.init_user_email or "").strip().lower()
    if not email:
        return

    with SessionLocal() as session:
        existing = get_user_by_email(session, email=email)
        if existing:
            # Link the configured chat if the seeded user has none yet.
            if settings.init_user_telegram_chat_id and existing.telegram_chat_id is None:
                existing.telegram_chat_id = settings.init_user_telegram_chat_id
                session.add(existing)
                session.commit()
            return
        user = create_user(
            session,
            email=email,
            first_name=settings.init_user_first_name,
            last_name=settings.init_user_last_name,
            subscription_plan=SubscriptionPlan.PRO,
            telegram_chat_id=settings.init_user_telegram_chat_id,
        )
        log_event(logger, "bootstrap.user.created", user_id=str(user.id))
