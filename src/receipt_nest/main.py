from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from receipt_nest.api.router import router as api_router
from receipt_nest.bootstrap import bootstrap
from receipt_nest.core.config import settings
from receipt_nest.core.logging import RequestContextMiddleware, get_logger, log_event
from receipt_nest.core.storage import StorageError

logger = get_logger(__name__)


async def _storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    log_event(logger, "http.storage_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "Receipt storage is unavailable"})


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        bootstrap()
        log_event(
            logger,
            "app.startup",
            environment=settings.environment,
            storage_backend=settings.storage_backend,
            email_ingest_enabled=bool(settings.receipt_inbound_domain),
            telegram_enabled=bool(settings.telegram_bot_token),
        )
        yield

    app = FastAPI(title="Receipt Nest", version="0.1.0", lifespan=lifespan)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StorageError, _storage_error_handler)
    app.include_router(api_router)
    return app


app = create_app()
