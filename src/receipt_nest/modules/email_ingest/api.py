from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.orm import Session

from receipt_nest.api.deps import get_current_user
from receipt_nest.core.config import settings
from receipt_nest.core.db import db_session
from receipt_nest.core.logging import get_logger, log_event, log_exception
from receipt_nest.core.security import webhook_key_matches
from receipt_nest.modules.email_ingest.aliases import (
    AliasAllocationError,
    generate_forwarding_address,
)
from receipt_nest.modules.email_ingest.schemas import ForwardingAddressOut
from receipt_nest.modules.email_ingest.service import ingest_inbound_email
from receipt_nest.modules.identity.models import User

router = APIRouter(tags=["email"])
logger = get_logger(__name__)


@router.post(
    "/api/email/forwarding-address",
    response_model=ForwardingAddressOut,
    response_model_by_alias=True,
)
def create_forwarding_address(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ForwardingAddressOut:
    inbound_domain = (settings.receipt_inbound_domain or "").strip().lower()
    if not inbound_domain:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Inbound email domain is not configured.",
        )
    try:
        address = generate_forwarding_address(session, user=user, inbound_domain=inbound_domain)
    except AliasAllocationError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e
    return ForwardingAddressOut(
        email_address=address.email_address, fallback_addresses=address.fallback_addresses
    )


@router.api_route("/webhooks/email", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def inbound_email_webhook(
    request: Request, session: Session = Depends(db_session)
) -> Response:
    if request.method == "GET":
        return PlainTextResponse("Inbound email webhook is live.")
    if request.method != "POST":
        return PlainTextResponse("Method Not Allowed", status_code=405)

    configured_key = settings.email_ingest_webhook_key
    if configured_key and not webhook_key_matches(request.query_params.get("key"), configured_key):
        return PlainTextResponse("Unauthorized", status_code=401)

    inbound_domain = (settings.receipt_inbound_domain or "").strip().lower()
    if not inbound_domain:
        log_event(logger, "email_ingest.domain_missing")
        return PlainTextResponse("Inbound domain is not configured.", status_code=500)

    try:
        body = await request.body()
        outcome = ingest_inbound_email(
            session,
            body=body,
            content_type=request.headers.get("content-type"),
            inbound_domain=inbound_domain,
        )
    except Exception:
        session.rollback()
        log_exception(logger, "email_ingest.failed")
        return JSONResponse(status_code=500, content={"ok": False})

    log_event(
        logger,
        "email_ingest.done",
        status_code=outcome.status_code,
        created_receipts=outcome.payload.get("createdReceipts"),
        skipped=outcome.payload.get("skipped"),
    )
    return JSONResponse(status_code=outcome.status_code, content=outcome.payload)
