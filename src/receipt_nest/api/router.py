from __future__ import annotations

from fastapi import APIRouter

from receipt_nest.modules.bot.api import router as bot_router
from receipt_nest.modules.email_ingest.api import router as email_router
from receipt_nest.modules.receipts.api import router as receipts_router

router = APIRouter()

router.include_router(receipts_router, prefix="/api")
router.include_router(email_router)
router.include_router(bot_router)


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
