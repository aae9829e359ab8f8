from __future__ import annotations

import enum
import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import JSON, Date, Enum, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from receipt_nest.core.models import Base, Timestamped, UUIDPrimaryKey


class ReceiptStatus(str, enum.Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    FINAL = "final"
    NEEDS_REVIEW = "needs_review"


TERMINAL_STATUSES = frozenset({ReceiptStatus.FINAL, ReceiptStatus.NEEDS_REVIEW})


class SourceChannel(str, enum.Enum):
    UPLOAD = "upload"
    EMAIL = "email"
    BOT = "bot"


class Receipt(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "receipts_receipt"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )
    status: Mapped[ReceiptStatus] = mapped_column(
        Enum(ReceiptStatus, native_enum=False),
        index=True,
    )
    source_channel: Mapped[SourceChannel] = mapped_column(
        Enum(SourceChannel, native_enum=False)
    )

    storage_key: Mapped[str] = mapped_column(String(1024), unique=True)
    original_name: Mapped[str] = mapped_column(String(512))
    mime_type: Mapped[str] = mapped_column(String(200))
    size_bytes: Mapped[int] = mapped_column(Integer)

    extraction_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    merchant_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    category_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    email_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    receipt_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    user = relationship("User")
