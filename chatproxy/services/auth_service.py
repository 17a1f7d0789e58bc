import hmac
import json
import logging

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from chatproxy.auth.session import SessionIdentity, SessionManager
from chatproxy.config.settings import Settings
from chatproxy.core.errors import AppError
from chatproxy.models.chat import LoginRequest, validation_messages
from chatproxy.ratelimit.limiter import FixedWindowRateLimiter, login_rate_limit_key

logger = logging.getLogger("chatproxy.auth")


def _matches(supplied: str, expected: str) -> bool:
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


class AuthService:
    """Admin login and logout against the configured single principal."""

    def __init__(
        self,
        settings: Settings,
        session_manager: SessionManager,
        rate_limiter: FixedWindowRateLimiter,
    ):
        self._admin_email = settings.admin_email.strip().lower()
        self._admin_password = settings.admin_password
        self._session_manager = session_manager
        self._rate_limiter = rate_limiter

    async def login(self, request: Request) -> Response:
        verdict = self._rate_limiter.check(login_rate_limit_key(request))
        if not verdict.allowed:
            raise AppError(
                429,
                "RATE_LIMITED",
                "Too many login attempts. Please try again later.",
                headers={"Retry-After": str(verdict.retry_after_seconds)},
            )

        credentials = await self._parse_body(request)

        if not self._admin_email or not self._admin_password:
            logger.error("login attempted but CHATPROXY_ADMIN_EMAIL/PASSWORD are not set")
            raise AppError(500, "SERVER_MISCONFIGURED", "Server misconfigured")

        email_ok = _matches(credentials.email.strip().lower(), self._admin_email)
        password_ok = _matches(credentials.password, self._admin_password)
        if not (email_ok and password_ok):
            logger.info("failed login attempt")
            raise AppError(401, "UNAUTHORIZED", "Invalid credentials")

        try:
            token = self._session_manager.issue(
                SessionIdentity(email=self._admin_email, is_admin=True)
            )
        except RuntimeError as exc:
            logger.error("cannot issue session: %s", exc)
            raise AppError(500, "SERVER_MISCONFIGURED", "Server misconfigured") from exc

        response = JSONResponse(status_code=200, content={"success": True})
        self._session_manager.set_cookie(response, token)
        logger.info("admin login", extra={"identity": self._admin_email})
        return response

    def logout(self) -> Response:
        response = JSONResponse(status_code=200, content={"success": True})
        self._session_manager.clear_cookie(response)
        return response

    @staticmethod
    async def _parse_body(request: Request) -> LoginRequest:
        try:
            data = json.loads(await request.body())
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise AppError(400, "INVALID_REQUEST", "Invalid request body") from exc
        if not isinstance(data, dict):
            raise AppError(400, "INVALID_REQUEST", "Invalid request body")
        try:
            return LoginRequest.model_validate(data)
        except ValidationError as exc:
            raise AppError(
                400,
                "INVALID_REQUEST",
                "Email and password are required",
                details=validation_messages(exc),
            ) from exc
