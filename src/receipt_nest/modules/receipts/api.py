from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from sqlalchemy.orm import Session

from receipt_nest.api.deps import get_current_user
from receipt_nest.core.config import settings
from receipt_nest.core.db import db_session
from receipt_nest.core.logging import get_logger, log_event
from receipt_nest.modules.identity.models import User
from receipt_nest.modules.identity.service import can_user_accept_new_receipt
from receipt_nest.modules.intake.files import (
    ALLOWED_ATTACHMENT_MIME_TYPES,
    normalize_attachment_mime_type,
    sanitize_file_name,
)
from receipt_nest.modules.intake.schemas import RawDocument
from receipt_nest.modules.receipts.models import SourceChannel
from receipt_nest.modules.receipts.schemas import ReceiptOut
from receipt_nest.modules.receipts.service import (
    create_receipt,
    enqueue_receipt_processing,
    get_receipt_for_user,
    list_receipts,
)

router = APIRouter(tags=["receipts"])
logger = get_logger(__name__)


@router.post("/receipts", response_model=ReceiptOut, status_code=status.HTTP_201_CREATED)
async def upload_receipt(
    upload: UploadFile = File(...),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReceiptOut:
    body = await upload.read()
    filename = upload.filename or "receipt"
    log_event(
        logger,
        "upload.received",
        filename=filename,
        content_type=upload.content_type,
        byte_size=len(body),
    )
    if not body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")
    if len(body) > settings.max_attachment_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large"
        )
    mime_type = normalize_attachment_mime_type(upload.content_type, filename)
    if mime_type not in ALLOWED_ATTACHMENT_MIME_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported file type")
    if not can_user_accept_new_receipt(session, user=user):
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="Receipt limit reached for your plan",
        )

    receipt = create_receipt(
        session,
        user=user,
        document=RawDocument(
            data=body,
            mime_type=mime_type,
            file_name=sanitize_file_name(filename),
            source_channel=SourceChannel.UPLOAD,
        ),
    )
    enqueue_receipt_processing(receipt)
    session.refresh(receipt)
    return ReceiptOut.model_validate(receipt, from_attributes=True)


@router.get("/receipts", response_model=list[ReceiptOut])
def list_my_receipts(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ReceiptOut]:
    return [
        ReceiptOut.model_validate(r, from_attributes=True)
        for r in list_receipts(session, user=user)
    ]


@router.get("/receipts/{receipt_id}", response_model=ReceiptOut)
def get_receipt(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReceiptOut:
    receipt = get_receipt_for_user(session, receipt_id=receipt_id, user=user)
    return ReceiptOut.model_validate(receipt, from_attributes=True)
