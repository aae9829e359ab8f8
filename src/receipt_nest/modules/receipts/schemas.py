from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from receipt_nest.modules.receipts.models import ReceiptStatus, SourceChannel


class ReceiptOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    status: ReceiptStatus
    source_channel: SourceChannel
    original_name: str
    mime_type: str
    size_bytes: int
    extraction_json: dict | None
    merchant_json: dict | None
    category_json: dict | None
    email_json: dict | None
    total_amount: Decimal | None
    currency: str | None
    receipt_date: date | None
    notes: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
