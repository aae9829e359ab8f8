from __future__ import annotations

import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from receipt_nest.core.logging import get_logger, log_event, log_exception
from receipt_nest.core.storage import get_storage
from receipt_nest.modules.identity.models import User
from receipt_nest.modules.intake.files import receipt_storage_key
from receipt_nest.modules.intake.schemas import RawDocument
from receipt_nest.modules.receipts.lifecycle import park_unqueued_receipt
from receipt_nest.modules.receipts.models import Receipt, ReceiptStatus
from receipt_nest.worker.tasks import PROCESS_RECEIPT_TASK, process_receipt_task

logger = get_logger(__name__)


def create_receipt(
    session: Session,
    *,
    user: User,
    document: RawDocument,
    email_meta: dict[str, Any] | None = None,
    notes: str | None = None,
    storage_file_name: str | None = None,
    timestamp_ms: int | None = None,
) -> Receipt:
    """Store the document blob and create its receipt in `uploaded`."""
    key = receipt_storage_key(
        user_id=user.id,
        file_name=storage_file_name or document.file_name,
        timestamp_ms=timestamp_ms,
    )
    stored = get_storage().put(key=key, body=document.data, content_type=document.mime_type)

    receipt = Receipt(
        user_id=user.id,
        status=ReceiptStatus.UPLOADED,
        source_channel=document.source_channel,
        storage_key=stored.key,
        original_name=document.file_name,
        mime_type=document.mime_type,
        size_bytes=stored.byte_size,
        email_json=email_meta,
        notes=notes,
    )
    session.add(receipt)
    session.commit()
    session.refresh(receipt)
    log_event(
        logger,
        "receipt.created",
        receipt_id=str(receipt.id),
        user_id=str(user.id),
        source_channel=document.source_channel.value,
        mime_type=document.mime_type,
        byte_size=stored.byte_size,
    )
    return receipt


def enqueue_receipt_processing(receipt: Receipt) -> None:
    """Queue processing; a receipt the broker refused lands in `needs_review`."""
    try:
        async_result = process_receipt_task.delay(str(receipt.id))
    except Exception as e:
        log_exception(
            logger,
            "celery.task.enqueue_failed",
            task_name=PROCESS_RECEIPT_TASK,
            receipt_id=str(receipt.id),
        )
        park_unqueued_receipt(
            receipt_id=receipt.id, error_message=f"Could not queue processing: {type(e).__name__}"
        )
        raise
    log_event(
        logger,
        "celery.task.enqueued",
        task_name=PROCESS_RECEIPT_TASK,
        celery_task_id=async_result.id,
        receipt_id=str(receipt.id),
    )


def list_receipts(session: Session, *, user: User) -> list[Receipt]:
    return list(
        session.scalars(
            select(Receipt).where(Receipt.user_id == user.id).order_by(Receipt.created_at.desc())
        )
    )


def get_receipt_for_user(session: Session, *, receipt_id: uuid.UUID, user: User) -> Receipt:
    receipt = session.scalar(
        select(Receipt).where(Receipt.id == receipt_id, Receipt.user_id == user.id)
    )
    if not receipt:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")
    return receipt
