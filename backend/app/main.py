from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.api.routes import router
from backend.app.dependencies import get_settings, get_telemetry
from backend.app.logging_config import configure_application_logging
from backend.app.repositories.link_repository import LinkStoreError

LOGGER = logging.getLogger("link_saver.app")
REQUEST_ID_HEADER = "X-Request-ID"


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    if settings.telegram_webhook_secret is None:
        LOGGER.warning("telegram webhook secret not set; webhook calls are not verified")
    LOGGER.info(
        "link saver starting store_backend=%s telegraph_enabled=%s",
        settings.store_backend,
        settings.telegraph_enabled,
    )
    telemetry = get_telemetry()
    telemetry.emit(
        "app.start",
        store_backend=settings.store_backend,
        telegraph_enabled=settings.telegraph_enabled,
        webhook_verified=settings.telegram_webhook_secret is not None,
    )
    try:
        yield
    finally:
        telemetry.emit("app.stop")


async def link_store_error_handler(request: Request, exc: Exception) -> Response:
    status_code = exc.status_code if isinstance(exc, LinkStoreError) else None
    LOGGER.warning(
        "link store request failed path=%s upstream_status=%s",
        request.url.path,
        status_code,
        exc_info=exc,
    )
    return JSONResponse(status_code=502, content={"detail": f"Link store unavailable: {exc}"})


def _request_id(request: Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER)
    if isinstance(incoming, str) and incoming.strip():
        return incoming.strip()
    return str(uuid4())


def create_app() -> FastAPI:
    app = FastAPI(title="Link Saver API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        telemetry = get_telemetry()
        request_id = _request_id(request)
        route = f"{request.method} {request.url.path}"
        context_tokens = bind_contextvars(http_request_id=request_id, http_route=route)
        started_at = perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit_error(
                "http.request.error",
                exc,
                request_id=request_id,
                route=route,
                duration_ms=int((perf_counter() - started_at) * 1000),
            )
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            telemetry.emit(
                "http.request.finish",
                request_id=request_id,
                route=route,
                duration_ms=int((perf_counter() - started_at) * 1000),
                status_code=response.status_code,
            )
            return response
        finally:
            reset_contextvars(**context_tokens)

    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(LinkStoreError, link_store_error_handler)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )

    return app


app = create_app()
