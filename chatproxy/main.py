import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatproxy.api.routes import router
from chatproxy.audit.entry import load_entry_schema
from chatproxy.audit.logger import AuditLogger
from chatproxy.auth.session import SessionManager, credential_warnings
from chatproxy.config.overrides import GatewaySettingsStore
from chatproxy.config.settings import get_settings
from chatproxy.core.errors import AppError, app_error_response, request_id_from_request
from chatproxy.core.logging import configure_logging
from chatproxy.gateway.client import GatewayClient
from chatproxy.middleware.request_id import RequestIDMiddleware
from chatproxy.models.chat import validation_messages_from_errors
from chatproxy.ratelimit.limiter import FixedWindowRateLimiter, RateLimitPolicy
from chatproxy.services.auth_service import AuthService
from chatproxy.services.chat_service import ChatService

logger = logging.getLogger("chatproxy.settings")

HTTP_ERROR_CODES = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}


def create_app(gateway_transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    for warning in credential_warnings(settings):
        logger.error("SECURITY: %s", warning)

    chat_limiter = FixedWindowRateLimiter(
        RateLimitPolicy(
            name="chat",
            limit=settings.chat_rate_limit,
            window_seconds=settings.chat_rate_window_s,
        ),
        sweep_interval_s=settings.rate_limit_sweep_interval_s,
    )
    login_limiter = FixedWindowRateLimiter(
        RateLimitPolicy(
            name="login",
            limit=settings.login_rate_limit,
            window_seconds=settings.login_rate_window_s,
        ),
        sweep_interval_s=settings.rate_limit_sweep_interval_s,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        chat_limiter.start()
        login_limiter.start()
        try:
            yield
        finally:
            await chat_limiter.stop()
            await login_limiter.stop()
            audit_logger.close()

    app = FastAPI(title="Chat Proxy Gateway", version="0.1.0", lifespan=lifespan)
    app.add_middleware(RequestIDMiddleware)

    session_manager = SessionManager(settings)
    settings_store = GatewaySettingsStore(settings)
    gateway_client = GatewayClient(
        settings_source=settings_store.get,
        timeout_s=settings.upstream_timeout_s,
        probe_timeout_s=settings.probe_timeout_s,
        health_path=settings.health_path,
        transport=gateway_transport,
    )
    audit_logger = AuditLogger(
        settings.logs_dir, schema=load_entry_schema(settings.contracts_dir)
    )

    app.state.settings = settings
    app.state.session_manager = session_manager
    app.state.settings_store = settings_store
    app.state.gateway_client = gateway_client
    app.state.audit_logger = audit_logger
    app.state.chat_limiter = chat_limiter
    app.state.login_limiter = login_limiter
    app.state.chat_service = ChatService(
        session_manager=session_manager,
        rate_limiter=chat_limiter,
        settings_store=settings_store,
        gateway_client=gateway_client,
        audit_logger=audit_logger,
    )
    app.state.auth_service = AuthService(
        settings=settings,
        session_manager=session_manager,
        rate_limiter=login_limiter,
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            exc.status_code,
            exc.code,
            exc.message,
            request_id,
            headers=exc.headers,
            details=exc.details,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            exc.status_code,
            HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
            str(exc.detail),
            request_id,
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            400,
            "INVALID_REQUEST",
            "Invalid request",
            request_id,
            details=validation_messages_from_errors(exc.errors()),
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, _: Exception) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(500, "INTERNAL_ERROR", "Internal server error", request_id)

    app.include_router(router)
    return app


app = create_app()
