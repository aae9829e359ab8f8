from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

# Set env before any receipt_nest imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.receipt_nest_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")
os.environ.setdefault("RECEIPT_AI_ENABLED", "false")


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import receipt_nest.models  # noqa: F401
    from receipt_nest.core.db import engine
    from receipt_nest.core.models import Base

    # Reset storage cache and directory
    import receipt_nest.core.storage as storage_mod

    storage_mod._storage = None

    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield


@pytest.fixture
def user():
    from receipt_nest.core.db import SessionLocal
    from receipt_nest.modules.identity.service import create_user

    with SessionLocal() as session:
        return create_user(
            session, email="jane.doe@example.com", first_name="Jane", last_name="Doe"
        )


@pytest.fixture
def auth_headers(user):
    from receipt_nest.core.security import create_access_token

    token = create_access_token(subject=str(user.id))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def build_multipart():
    def _build(boundary: str, parts: list[tuple[dict[str, str], bytes]]) -> bytes:
        """Assemble a CRLF-framed multipart body from (headers, payload) pairs."""
        chunks: list[bytes] = []
        for headers, payload in parts:
            chunks.append(f"--{boundary}\r\n".encode())
            for name, value in headers.items():
                chunks.append(f"{name}: {value}\r\n".encode())
            chunks.append(b"\r\n")
            chunks.append(payload)
            chunks.append(b"\r\n")
        chunks.append(f"--{boundary}--\r\n".encode())
        return b"".join(chunks)

    return _build
