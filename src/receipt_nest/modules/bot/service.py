from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.orm import Session

from receipt_nest.core.config import settings
from receipt_nest.core.logging import get_logger, log_event, log_exception
from receipt_nest.modules.identity.service import (
    can_user_accept_new_receipt,
    find_user_by_telegram_chat_id,
)
from receipt_nest.modules.intake.files import sanitize_file_name
from receipt_nest.modules.intake.schemas import RawDocument
from receipt_nest.modules.receipts.models import SourceChannel
from receipt_nest.modules.receipts.service import create_receipt, enqueue_receipt_processing

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

BOT_DOCUMENT_MIME_TYPES: frozenset[str] = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/webp", "application/pdf"}
)

MSG_NOT_LINKED = (
    "Your Telegram account is not linked to ReceiptNest yet.\n\n"
    "Open the ReceiptNest app and connect Telegram to get started."
)
MSG_RECEIVED = "Receipt received! Processing..."
MSG_UPLOADED = (
    "Your receipt has been uploaded and is being processed. You'll see it in the app shortly!"
)
MSG_FAILED = (
    "Sorry, I had trouble processing that receipt. Please try again or upload it through the app."
)
MSG_UNSUPPORTED = (
    "Sorry, I can only process images (JPEG, PNG, WebP) and PDF files. "
    "Please send a supported file type."
)
MSG_TOO_LARGE = "That file is too large. Please send a file under 10MB."
MSG_PLAN_LIMIT = (
    "You've reached the receipt limit for your plan. Upgrade to keep adding receipts."
)
MSG_UNKNOWN = "Send me a photo or PDF of a receipt to add it to your account."


class TelegramError(RuntimeError):
    pass


class TelegramClient:
    def __init__(self, token: str, *, timeout: float = 30.0) -> None:
        self._token = token
        self._timeout = timeout

    def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{TELEGRAM_API_BASE}/bot{self._token}/{method}"
        resp = httpx.post(url, json=payload, timeout=self._timeout)
        data = resp.json() if resp.content else {}
        if resp.status_code >= 400 or not data.get("ok", False):
            log_event(
                logger,
                "bot.telegram.api_error",
                method=method,
                status_code=resp.status_code,
                description=data.get("description"),
            )
        return data

    def send_message(self, chat_id: int, text: str) -> None:
        """Best effort: a lost reply never blocks receipt handling."""
        try:
            self._call("sendMessage", {"chat_id": chat_id, "text": text})
        except (httpx.HTTPError, ValueError):
            log_exception(logger, "bot.telegram.send_failed", chat_id=chat_id)

    def get_file_path(self, file_id: str) -> str:
        data = self._call("getFile", {"file_id": file_id})
        path = (data.get("result") or {}).get("file_path") if data.get("ok") else None
        if not path:
            raise TelegramError("Failed to get file info from Telegram")
        return str(path)

    def download_file(self, file_path: str) -> bytes:
        url = f"{TELEGRAM_API_BASE}/file/bot{self._token}/{file_path}"
        resp = httpx.get(url, timeout=self._timeout, follow_redirects=True)
        resp.raise_for_status()
        return resp.content


def get_telegram_client() -> TelegramClient:
    if not settings.telegram_bot_token:
        raise TelegramError("Telegram bot token is not configured")
    return TelegramClient(settings.telegram_bot_token)


@dataclass(frozen=True)
class BotFile:
    file_id: str
    file_name: str
    mime_type: str | None
    file_size: int | None


def _mime_from_path(file_path: str) -> str:
    lower = file_path.lower()
    if lower.endswith(".png"):
        return "image/png"
    if lower.endswith(".webp"):
        return "image/webp"
    return "image/jpeg"


def select_bot_file(message: dict[str, Any], *, timestamp_ms: int) -> BotFile | None:
    photos = message.get("photo")
    if isinstance(photos, list) and photos:
        # Telegram orders photo sizes smallest first.
        largest = photos[-1]
        return BotFile(
            file_id=str(largest.get("file_id")),
            file_name=f"telegram_receipt_{timestamp_ms}.jpg",
            mime_type=None,
            file_size=largest.get("file_size"),
        )
    document = message.get("document")
    if isinstance(document, dict) and document.get("file_id"):
        return BotFile(
            file_id=str(document["file_id"]),
            file_name=str(document.get("file_name") or f"telegram_receipt_{timestamp_ms}"),
            mime_type=document.get("mime_type"),
            file_size=document.get("file_size"),
        )
    return None


def handle_telegram_update(
    session: Session, *, update: dict[str, Any], client: TelegramClient
) -> None:
    """Turn a photo or document message from a linked chat into an uploaded receipt."""
    message = update.get("message")
    if not isinstance(message, dict):
        return
    chat_id = (message.get("chat") or {}).get("id")
    if chat_id is None:
        return

    user = find_user_by_telegram_chat_id(session, chat_id=int(chat_id))
    if user is None:
        client.send_message(chat_id, MSG_NOT_LINKED)
        return

    timestamp_ms = int(time.time() * 1000)
    bot_file = select_bot_file(message, timestamp_ms=timestamp_ms)
    if bot_file is None:
        client.send_message(chat_id, MSG_UNKNOWN)
        return

    if bot_file.mime_type and bot_file.mime_type not in BOT_DOCUMENT_MIME_TYPES:
        client.send_message(chat_id, MSG_UNSUPPORTED)
        return
    if bot_file.file_size and bot_file.file_size > settings.max_attachment_bytes:
        client.send_message(chat_id, MSG_TOO_LARGE)
        return
    if not can_user_accept_new_receipt(session, user=user):
        client.send_message(chat_id, MSG_PLAN_LIMIT)
        return

    client.send_message(chat_id, MSG_RECEIVED)
    try:
        file_path = client.get_file_path(bot_file.file_id)
        data = client.download_file(file_path)
        if not data or len(data) > settings.max_attachment_bytes:
            client.send_message(chat_id, MSG_TOO_LARGE)
            return

        receipt = create_receipt(
            session,
            user=user,
            document=RawDocument(
                data=data,
                mime_type=bot_file.mime_type or _mime_from_path(file_path),
                file_name=sanitize_file_name(bot_file.file_name),
                source_channel=SourceChannel.BOT,
            ),
            timestamp_ms=timestamp_ms,
        )
    except Exception:
        session.rollback()
        log_exception(logger, "bot.upload.failed", user_id=str(user.id), chat_id=chat_id)
        client.send_message(chat_id, MSG_FAILED)
        return

    log_event(
        logger,
        "bot.upload.stored",
        user_id=str(user.id),
        receipt_id=str(receipt.id),
        byte_size=receipt.size_bytes,
    )
    enqueue_receipt_processing(receipt)
    client.send_message(chat_id, MSG_UPLOADED)
