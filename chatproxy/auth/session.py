"""Signed session tokens.

The proxy has a single admin principal.  A successful login issues an HS256
JWT that is stored in an httpOnly cookie; API clients may send the same token
as ``Authorization: Bearer <token>``.  Verification only answers "who is this",
it never raises into request handling.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
from fastapi import Request
from fastapi.responses import Response

from chatproxy.config.settings import Settings

logger = logging.getLogger("chatproxy.auth")

ALGORITHM = "HS256"
PLACEHOLDER_SECRETS = {"replace_with_32+_random_bytes", "changeme"}


@dataclass(frozen=True)
class SessionIdentity:
    email: str
    is_admin: bool = False


class SessionManager:
    def __init__(self, settings: Settings):
        self._secret = settings.session_secret
        self._cookie_name = settings.session_cookie_name
        self._max_age_s = settings.session_max_age_s
        self._secure_cookie = settings.is_production

    @property
    def cookie_name(self) -> str:
        return self._cookie_name

    def issue(self, identity: SessionIdentity) -> str:
        if not self._secret:
            raise RuntimeError("CHATPROXY_SESSION_SECRET is not set")
        now = datetime.now(UTC)
        payload = {
            "sub": identity.email,
            "admin": identity.is_admin,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self._max_age_s)).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> SessionIdentity | None:
        if not self._secret:
            logger.error("session secret is not configured; rejecting all sessions")
            return None
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info("expired session token")
            return None
        except jwt.InvalidTokenError as exc:
            logger.info("invalid session token: %s", exc)
            return None
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        return SessionIdentity(email=subject, is_admin=bool(claims.get("admin", False)))

    def token_from_request(self, request: Request) -> str | None:
        cookie_token = request.cookies.get(self._cookie_name)
        if cookie_token:
            return cookie_token
        auth_header = request.headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
            return token or None
        return None

    def identity_from_request(self, request: Request) -> SessionIdentity | None:
        token = self.token_from_request(request)
        if token is None:
            return None
        return self.verify(token)

    def set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            self._cookie_name,
            token,
            max_age=self._max_age_s,
            httponly=True,
            secure=self._secure_cookie,
            samesite="lax",
            path="/",
        )

    def clear_cookie(self, response: Response) -> None:
        response.set_cookie(
            self._cookie_name,
            "",
            max_age=0,
            httponly=True,
            secure=self._secure_cookie,
            samesite="lax",
            path="/",
        )


def credential_warnings(settings: Settings) -> list[str]:
    """Return startup warnings for weak credentials in production."""
    if not settings.is_production:
        return []
    warnings: list[str] = []
    secret = settings.session_secret
    if not secret or secret in PLACEHOLDER_SECRETS or len(secret) < 32:
        warnings.append(
            "CHATPROXY_SESSION_SECRET is missing or looks like a placeholder; "
            "generate one with: openssl rand -base64 32"
        )
    if not settings.admin_password or settings.admin_password == "changeme_strong_password":
        warnings.append(
            "CHATPROXY_ADMIN_PASSWORD is missing or set to the default placeholder"
        )
    return warnings
