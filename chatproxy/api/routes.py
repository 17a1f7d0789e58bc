from typing import Any

from fastapi import APIRouter, Body, Query, Request
from fastapi.responses import Response

from chatproxy.audit.logger import AuditLogger
from chatproxy.auth.session import SessionIdentity, SessionManager
from chatproxy.config.overrides import GatewaySettingsStore, validate_settings_patch
from chatproxy.core.errors import AppError
from chatproxy.gateway.client import GatewayClient
from chatproxy.models.chat import ConnectionTestRequest
from chatproxy.services.auth_service import AuthService
from chatproxy.services.chat_service import ChatService

router = APIRouter()

LOGS_DEFAULT_LIMIT = 50
LOGS_MAX_LIMIT = 500


def require_identity(request: Request) -> SessionIdentity:
    sessions: SessionManager = request.app.state.session_manager
    identity = sessions.identity_from_request(request)
    if identity is None:
        raise AppError(401, "UNAUTHORIZED", "Unauthorized")
    return identity


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/api/chat")
async def chat(request: Request) -> Response:
    service: ChatService = request.app.state.chat_service
    return await service.handle(request)


@router.api_route(
    "/api/chat",
    methods=["GET", "HEAD", "OPTIONS", "PUT", "PATCH", "DELETE"],
    include_in_schema=False,
)
def chat_method_not_allowed() -> Response:
    raise AppError(
        405,
        "METHOD_NOT_ALLOWED",
        "Method not allowed. Use POST.",
        headers={"Allow": "POST"},
    )


@router.post("/api/auth/login")
async def login(request: Request) -> Response:
    service: AuthService = request.app.state.auth_service
    return await service.login(request)


@router.post("/api/auth/logout")
def logout(request: Request) -> Response:
    service: AuthService = request.app.state.auth_service
    return service.logout()


@router.get("/api/gateway/health")
async def gateway_health(request: Request) -> dict[str, str]:
    require_identity(request)
    client: GatewayClient = request.app.state.gateway_client
    report = await client.check_health()
    return report.as_dict()


@router.post("/api/gateway/test-connection")
async def gateway_test_connection(
    request: Request, payload: ConnectionTestRequest | None = Body(default=None)
) -> dict[str, Any]:
    require_identity(request)
    client: GatewayClient = request.app.state.gateway_client
    overrides = payload or ConnectionTestRequest()
    check = await client.test_connection(url=overrides.url, token=overrides.token)
    return check.as_dict()


@router.get("/api/settings")
def read_settings(request: Request) -> dict[str, str]:
    require_identity(request)
    store: GatewaySettingsStore = request.app.state.settings_store
    return store.get().masked()


@router.post("/api/settings")
def update_settings(
    request: Request, patch: dict[str, Any] = Body(default_factory=dict)
) -> dict[str, str]:
    require_identity(request)
    clean, errors = validate_settings_patch(patch)
    if errors:
        raise AppError(400, "INVALID_REQUEST", "Invalid settings", details=errors)
    store: GatewaySettingsStore = request.app.state.settings_store
    store.save(clean)
    return store.get().masked()


@router.get("/api/logs")
def recent_logs(
    request: Request, limit: int = Query(default=LOGS_DEFAULT_LIMIT)
) -> dict[str, Any]:
    require_identity(request)
    audit: AuditLogger = request.app.state.audit_logger
    bounded = min(max(limit, 1), LOGS_MAX_LIMIT)
    entries = audit.read_recent(bounded)
    return {"entries": [entry.as_dict() for entry in entries], "backend": audit.backend}
