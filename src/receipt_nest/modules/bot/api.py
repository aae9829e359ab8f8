from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.orm import Session

from receipt_nest.core.config import settings
from receipt_nest.core.db import db_session
from receipt_nest.core.logging import get_logger, log_event, log_exception
from receipt_nest.modules.bot import service as bot_service

router = APIRouter(tags=["bot"])
logger = get_logger(__name__)


@router.post("/webhooks/telegram")
async def telegram_webhook(request: Request, session: Session = Depends(db_session)) -> Response:
    if not settings.telegram_bot_token:
        log_event(logger, "bot.telegram.token_missing")
        return PlainTextResponse("Bot not configured", status_code=500)

    try:
        update = await request.json()
    except ValueError:
        return PlainTextResponse("OK")
    if not isinstance(update, dict):
        return PlainTextResponse("OK")

    client = bot_service.get_telegram_client()
    try:
        bot_service.handle_telegram_update(session, update=update, client=client)
    except Exception:
        session.rollback()
        log_exception(logger, "bot.telegram.update_failed", update_id=update.get("update_id"))
    # Telegram retries non-2xx responses, so failures are acknowledged too.
    return PlainTextResponse("OK")
