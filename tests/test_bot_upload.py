from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from receipt_nest.core.config import settings
from receipt_nest.core.db import SessionLocal
from receipt_nest.main import app
from receipt_nest.modules.bot import service as bot_service
from receipt_nest.modules.identity.models import User
from receipt_nest.modules.receipts.models import Receipt, SourceChannel

CHAT_ID = 555001
JPEG = b"\xff\xd8\xff\xe0" + b"\x20" * 128


class FakeTelegramClient:
    def __init__(self, *, files=None, fail_on_file=False):
        self.sent: list[tuple[int, str]] = []
        self.files = files or {}
        self.fail_on_file = fail_on_file
        self.requested: list[str] = []

    def send_message(self, chat_id, text):
        self.sent.append((chat_id, text))

    def get_file_path(self, file_id):
        self.requested.append(file_id)
        if self.fail_on_file:
            raise bot_service.TelegramError("Failed to get file info from Telegram")
        return f"photos/{file_id}.jpg"

    def download_file(self, file_path):
        return self.files.get(file_path, JPEG)

    @property
    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


@pytest.fixture
def linked_user(user):
    with SessionLocal() as session:
        row = session.get(User, user.id)
        row.telegram_chat_id = CHAT_ID
        session.commit()
    return user


def _message(**kwargs):
    return {"update_id": 1, "message": {"message_id": 9, "chat": {"id": CHAT_ID}, **kwargs}}


def _handle(update, client) -> None:
    with SessionLocal() as session:
        bot_service.handle_telegram_update(session, update=update, client=client)


def _receipts() -> list[Receipt]:
    with SessionLocal() as session:
        return list(session.scalars(select(Receipt)))


def test_unlinked_chat_is_told_to_link_account():
    client = FakeTelegramClient()

    _handle(_message(text="hi"), client)

    assert client.texts == [bot_service.MSG_NOT_LINKED]


def test_largest_photo_is_uploaded(linked_user):
    client = FakeTelegramClient()

    _handle(
        _message(
            photo=[
                {"file_id": "small", "file_size": 10},
                {"file_id": "large", "file_size": 900},
            ]
        ),
        client,
    )

    assert client.requested == ["large"]
    assert client.texts == [bot_service.MSG_RECEIVED, bot_service.MSG_UPLOADED]
    [receipt] = _receipts()
    assert receipt.user_id == linked_user.id
    assert receipt.source_channel == SourceChannel.BOT
    assert receipt.mime_type == "image/jpeg"
    assert receipt.original_name.startswith("telegram_receipt_")
    assert receipt.original_name.endswith(".jpg")
    assert receipt.size_bytes == len(JPEG)


def test_pdf_document_is_uploaded(linked_user):
    client = FakeTelegramClient(files={"photos/doc1.jpg": b"%PDF-1.7 statement"})

    _handle(
        _message(
            document={
                "file_id": "doc1",
                "file_name": "March invoice.pdf",
                "mime_type": "application/pdf",
                "file_size": 20,
            }
        ),
        client,
    )

    [receipt] = _receipts()
    assert receipt.mime_type == "application/pdf"
    assert receipt.original_name == "March_invoice.pdf"


@pytest.mark.parametrize(
    ("message", "reply"),
    [
        ({"text": "hello"}, bot_service.MSG_UNKNOWN),
        (
            {"document": {"file_id": "z", "file_name": "a.zip", "mime_type": "application/zip"}},
            bot_service.MSG_UNSUPPORTED,
        ),
        (
            {"photo": [{"file_id": "huge", "file_size": 50 * 1024 * 1024}]},
            bot_service.MSG_TOO_LARGE,
        ),
    ],
)
def test_rejected_messages(linked_user, message, reply):
    client = FakeTelegramClient()

    _handle(_message(**message), client)

    assert client.texts == [reply]
    assert client.requested == []
    assert _receipts() == []


def test_plan_limit_blocks_upload(linked_user, monkeypatch):
    monkeypatch.setattr(settings, "free_plan_receipt_limit", 0)
    client = FakeTelegramClient()

    _handle(_message(photo=[{"file_id": "p", "file_size": 10}]), client)

    assert client.texts == [bot_service.MSG_PLAN_LIMIT]
    assert _receipts() == []


def test_download_failure_reports_error(linked_user):
    client = FakeTelegramClient(fail_on_file=True)

    _handle(_message(photo=[{"file_id": "p", "file_size": 10}]), client)

    assert client.texts == [bot_service.MSG_RECEIVED, bot_service.MSG_FAILED]
    assert _receipts() == []


def test_webhook_requires_bot_token(monkeypatch):
    monkeypatch.setattr(settings, "telegram_bot_token", None)

    resp = TestClient(app).post("/webhooks/telegram", json=_message(text="hi"))

    assert resp.status_code == 500
    assert resp.text == "Bot not configured"


def test_webhook_always_acknowledges(monkeypatch, linked_user):
    monkeypatch.setattr(settings, "telegram_bot_token", "123:abc")
    client = FakeTelegramClient()
    monkeypatch.setattr(bot_service, "get_telegram_client", lambda: client)
    http = TestClient(app)

    resp = http.post("/webhooks/telegram", json=_message(photo=[{"file_id": "p"}]))
    assert resp.status_code == 200
    assert resp.text == "OK"
    assert client.texts[-1] == bot_service.MSG_UPLOADED

    def _explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(bot_service, "handle_telegram_update", _explode)
    assert http.post("/webhooks/telegram", json=_message(text="x")).text == "OK"
    assert (
        http.post(
            "/webhooks/telegram", content=b"not json", headers={"Content-Type": "application/json"}
        ).text
        == "OK"
    )


def test_client_raises_when_file_lookup_fails(monkeypatch):
    def _fake_post(url, json=None, timeout=None):
        assert url.endswith("/bot123:abc/getFile")
        return httpx.Response(200, json={"ok": False, "description": "file not found"})

    monkeypatch.setattr(bot_service.httpx, "post", _fake_post)

    with pytest.raises(bot_service.TelegramError):
        bot_service.TelegramClient("123:abc").get_file_path("missing")


class UnreachableReplyClient(FakeTelegramClient):
    def send_message(self, chat_id, text):
        super().send_message(chat_id, text)
        if text == bot_service.MSG_UPLOADED:
            raise httpx.ConnectError("telegram unreachable")


def test_lost_confirmation_still_processes_receipt(monkeypatch, linked_user):
    monkeypatch.setattr(settings, "telegram_bot_token", "123:abc")
    monkeypatch.setattr(bot_service, "get_telegram_client", lambda: UnreachableReplyClient())

    resp = TestClient(app).post("/webhooks/telegram", json=_message(photo=[{"file_id": "p"}]))

    assert resp.text == "OK"
    assert [r.status.value for r in _receipts()] == ["needs_review"]


def test_client_send_message_is_best_effort(monkeypatch):
    def _down(url, json=None, timeout=None):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(bot_service.httpx, "post", _down)

    assert bot_service.TelegramClient("123:abc").send_message(CHAT_ID, "hi") is None

    def _html(url, json=None, timeout=None):
        return httpx.Response(502, content=b"<html>bad gateway</html>")

    monkeypatch.setattr(bot_service.httpx, "post", _html)

    assert bot_service.TelegramClient("123:abc").send_message(CHAT_ID, "hi") is None
