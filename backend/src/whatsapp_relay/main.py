from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api import router
from .app_logging import configure_logging
from .config import Settings, get_settings, runtime_secret_issues
from .conversations import MessageStore
from .runtime import build_runtime
from .whatsapp import WhatsAppSender

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGIN = "http://localhost:3000"


def _enforce_runtime_secrets(settings: Settings) -> None:
    secret_issues = runtime_secret_issues(settings)
    if not secret_issues:
        return
    if settings.runtime_secret_guard_mode == "enforce":
        raise RuntimeError(
            "runtime secret guard blocked startup: "
            + "; ".join(secret_issues)
            + ". Remediation: set the missing WhatsApp secrets or switch "
            + "WHATSAPP_SENDER_TYPE=stub / WEBHOOK_SIGNATURE_MODE=off for local runs."
        )
    if settings.runtime_secret_guard_mode == "warn":
        for issue in secret_issues:
            logger.warning("runtime secret guard warning: %s", issue)


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Invalid request",
            "details": jsonable_encoder(exc.errors()),
        },
    )


def create_app(
    settings: Settings | None = None,
    *,
    sender: WhatsAppSender | None = None,
    store: MessageStore | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    _enforce_runtime_secrets(settings)

    runtime = build_runtime(settings, sender=sender, store=store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        logger.info("draining outbound sends before shutdown")
        runtime.close()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allowed_origins) or [DEFAULT_CORS_ORIGIN],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)  # type: ignore[arg-type]

    app.include_router(router, prefix=settings.api_prefix.rstrip("/"))
    return app


app = create_app()
