from __future__ import annotations

import uuid

import pytest

from receipt_nest.core.storage import LocalObjectStorage, StorageError
from receipt_nest.modules.intake.files import (
    is_allowed_attachment,
    normalize_attachment_mime_type,
    receipt_storage_key,
    sanitize_file_name,
)
from receipt_nest.modules.intake.schemas import RawDocument


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("receipt.jpg", "receipt.jpg"),
        ("my receipt (1).PDF", "my_receipt_1_.PDF"),
        ("café.pdf", "caf_.pdf"),
        ("../../etc/passwd", ".._.._etc_passwd"),
        ("___", "receipt"),
        (None, "receipt"),
    ],
)
def test_sanitize_file_name(raw, expected):
    assert sanitize_file_name(raw) == expected


def test_sanitize_file_name_caps_length():
    assert len(sanitize_file_name("x" * 500 + ".jpg")) == 120


def test_receipt_storage_key_layout():
    user_id = uuid.UUID("00000000-0000-0000-0000-000000000042")

    key = receipt_storage_key(user_id=user_id, file_name="Lunch Receipt.jpg", timestamp_ms=1700000000000)

    assert key == f"users/{user_id}/receipts/1700000000000_Lunch_Receipt.jpg"


@pytest.mark.parametrize(
    ("declared", "file_name", "expected"),
    [
        ("image/jpeg", "whatever.bin", "image/jpeg"),
        ("IMAGE/PNG; charset=binary", "x", "image/png"),
        ("application/octet-stream", "scan.PDF", "application/pdf"),
        (None, "photo.heic", "image/heic"),
        ("text/csv", "data.csv", "text/csv"),
        (None, "noext", "application/octet-stream"),
    ],
)
def test_normalize_attachment_mime_type(declared, file_name, expected):
    assert normalize_attachment_mime_type(declared, file_name) == expected


def test_is_allowed_attachment():
    ok = RawDocument(data=b"123", mime_type="application/octet-stream", file_name="a.png")
    empty = RawDocument(data=b"", mime_type="image/png", file_name="a.png")
    text = RawDocument(data=b"123", mime_type="text/plain", file_name="a.txt")

    assert is_allowed_attachment(ok, max_bytes=10)
    assert not is_allowed_attachment(ok, max_bytes=2)
    assert not is_allowed_attachment(empty, max_bytes=10)
    assert not is_allowed_attachment(text, max_bytes=10)


def test_local_storage_round_trip(tmp_path):
    storage = LocalObjectStorage(tmp_path / "blobs")

    stored = storage.put(key="users/u1/receipts/1_a.jpg", body=b"abc", content_type="image/jpeg")

    assert stored.byte_size == 3
    assert stored.content_type == "image/jpeg"
    assert storage.get(key="users/u1/receipts/1_a.jpg") == b"abc"

    storage.delete(key="users/u1/receipts/1_a.jpg")
    with pytest.raises(StorageError):
        storage.get(key="users/u1/receipts/1_a.jpg")


@pytest.mark.parametrize("key", ["", "/etc/passwd", "users/u1/../../secrets.txt"])
def test_local_storage_rejects_escaping_keys(tmp_path, key):
    storage = LocalObjectStorage(tmp_path / "blobs")

    with pytest.raises(StorageError):
        storage.put(key=key, body=b"abc")


def test_local_storage_put_leaves_no_partial_file(tmp_path):
    storage = LocalObjectStorage(tmp_path / "blobs")

    storage.put(key="users/u1/receipts/2_b.pdf", body=b"%PDF-1.4", content_type="application/pdf")

    receipts_dir = tmp_path / "blobs" / "users" / "u1" / "receipts"
    assert sorted(p.name for p in receipts_dir.iterdir()) == ["2_b.pdf"]
