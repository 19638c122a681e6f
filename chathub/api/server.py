"""FastAPI transport for the action surface."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from chathub.api.actions import ActionDispatcher, ActionResult, RequestContext
from chathub.api.sessions import SessionCodec
from chathub.config import HubSettings
from chathub.logging import logger


def create_app(
    settings: HubSettings,
    dispatcher: ActionDispatcher,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the ASGI app; ``http_client`` is closed on shutdown when given."""

    sessions = SessionCodec(settings.session)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("chathub_started", environment=settings.environment, data_dir=str(settings.storage.data_dir))
        yield
        if http_client is not None:
            await http_client.aclose()
        logger.info("chathub_stopped")

    app = FastAPI(
        title="Chathub",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type"],
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("unhandled_exception", path=request.url.path, error_type=exc.__class__.__name__, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "internal_error", "message": "An unexpected error occurred."},
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api")
    async def api(request: Request) -> Response:
        try:
            payload: Any = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        if not isinstance(payload, dict):
            return JSONResponse(
                status_code=400,
                content={"success": False, "error": "invalid_input", "message": "Request body must be a JSON object."},
            )

        context = RequestContext(
            user_id=sessions.decode(request.cookies.get(settings.session.cookie_name)),
            client_ip=request.client.host if request.client else None,
        )
        result = await dispatcher.dispatch(payload.get("action"), payload, context)
        return _to_response(result, settings, sessions)

    return app


def _to_response(result: ActionResult, settings: HubSettings, sessions: SessionCodec) -> Response:
    if result.attachment is not None:
        attachment = result.attachment
        response: Response = PlainTextResponse(
            attachment.content,
            media_type=attachment.media_type,
            headers={"Content-Disposition": f'attachment; filename="{attachment.filename}"'},
        )
    else:
        response = JSONResponse(content=result.body)

    cookie_name = settings.session.cookie_name
    if result.session_user_id is not None:
        response.set_cookie(
            cookie_name,
            sessions.encode(result.session_user_id),
            max_age=settings.session.ttl_seconds,
            httponly=True,
            secure=settings.session.secure_cookie,
            samesite="lax",
        )
    elif result.clear_session:
        response.delete_cookie(
            cookie_name,
            httponly=True,
            secure=settings.session.secure_cookie,
            samesite="lax",
        )
    return response


__all__ = ["create_app"]
