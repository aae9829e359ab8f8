from __future__ import annotations

import enum

from sqlalchemy import BigInteger, Boolean, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from receipt_nest.core.models import Base, Timestamped, UUIDPrimaryKey


class SubscriptionPlan(str, enum.Enum):
    FREE = "free"
    PRO = "pro"


class User(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "identity_user"

    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    subscription_plan: Mapped[SubscriptionPlan] = mapped_column(
        Enum(SubscriptionPlan, native_enum=False),
        default=SubscriptionPlan.FREE,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Forwarding aliases and tokens are unique across all users.
    receipt_email_alias: Mapped[str | None] = mapped_column(
        String(64), unique=True, index=True, nullable=True
    )
    receipt_email_token: Mapped[str | None] = mapped_column(
        String(64), unique=True, index=True, nullable=True
    )
    receipt_forwarding_address: Mapped[str | None] = mapped_column(String(320), nullable=True)
    receipt_forwarding_enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    telegram_chat_id: Mapped[int | None] = mapped_column(
        BigInteger, unique=True, index=True, nullable=True
    )
