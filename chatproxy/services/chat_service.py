import json
import logging
from time import perf_counter
from typing import NoReturn

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from chatproxy.audit.entry import ChatLogEntry, utc_timestamp
from chatproxy.audit.logger import AuditLogger
from chatproxy.auth.session import SessionIdentity, SessionManager
from chatproxy.config.overrides import GatewaySettingsStore
from chatproxy.core.errors import AppError
from chatproxy.gateway.classifier import ErrorCode, classify
from chatproxy.gateway.client import GatewayClient
from chatproxy.gateway.errors import GatewayError, GatewayHTTPError
from chatproxy.models.chat import (
    ChatCompletionRequest,
    first_choice_content,
    validation_messages,
)
from chatproxy.ratelimit.limiter import FixedWindowRateLimiter, rate_limit_key
from chatproxy.services.relay import (
    RelayOutcome,
    RelayResult,
    RelayStreamingResponse,
    StreamRelay,
)

logger = logging.getLogger("chatproxy.chat")

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
EMPTY_CONTENT_MESSAGE = "No response received from model"
EMPTY_STREAM_MESSAGE = "Gateway returned an empty body"


class ChatService:
    """Handles one chat request end to end.

    Stages run cheapest first: identity, rate limit, chat mode, body
    validation, then the upstream call.  Rejections before the upstream call
    leave no audit entry; every upstream interaction that completes or fails
    leaves exactly one.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        rate_limiter: FixedWindowRateLimiter,
        settings_store: GatewaySettingsStore,
        gateway_client: GatewayClient,
        audit_logger: AuditLogger,
    ):
        self._session_manager = session_manager
        self._rate_limiter = rate_limiter
        self._settings_store = settings_store
        self._gateway_client = gateway_client
        self._audit_logger = audit_logger

    async def handle(self, request: Request) -> Response:
        identity = self._session_manager.identity_from_request(request)
        if identity is None:
            raise AppError(401, "UNAUTHORIZED", "Unauthorized")

        verdict = self._rate_limiter.check(rate_limit_key(request, identity.email))
        if not verdict.allowed:
            raise AppError(
                429,
                ErrorCode.RATE_LIMITED.value,
                "Too many requests. Please wait before sending another message.",
                headers={"Retry-After": str(verdict.retry_after_seconds)},
            )

        if not self._settings_store.get().chat_enabled:
            raise AppError(
                503,
                ErrorCode.CHAT_DISABLED.value,
                "Chat is not configured for this instance. "
                "Set CHATPROXY_CHAT_MODE=enabled when the gateway REST endpoint is ready.",
            )

        payload = await self._parse_body(request)
        if payload.stream:
            return await self._handle_stream(request, identity, payload)
        return await self._handle_buffered(request, identity, payload)

    async def _parse_body(self, request: Request) -> ChatCompletionRequest:
        raw = await request.body()
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise AppError(400, "INVALID_REQUEST", "Invalid request body") from exc
        if not isinstance(data, dict):
            raise AppError(400, "INVALID_REQUEST", "Invalid request body")
        try:
            return ChatCompletionRequest.model_validate(data)
        except ValidationError as exc:
            raise AppError(
                400,
                "INVALID_REQUEST",
                "model and a non-empty messages array are required",
                details=validation_messages(exc),
            ) from exc

    async def _handle_buffered(
        self, request: Request, identity: SessionIdentity, payload: ChatCompletionRequest
    ) -> Response:
        started = perf_counter()
        prompt_chars = payload.prompt_chars
        try:
            completion = await self._gateway_client.complete(payload.upstream_body(stream=False))
        except GatewayError as exc:
            self._fail_upstream(request, identity, payload, started, exc)

        content = first_choice_content(completion)
        if not content:
            self._record(
                identity, payload, started, success=False, error_message=EMPTY_CONTENT_MESSAGE
            )
            logger.warning(
                "gateway returned no assistant content",
                extra=self._log_extra(request, identity, payload, started, ErrorCode.GATEWAY_ERROR),
            )
            raise AppError(502, ErrorCode.GATEWAY_ERROR.value, EMPTY_CONTENT_MESSAGE)

        self._record(identity, payload, started, success=True, response_chars=len(content))
        logger.info(
            "chat completed",
            extra={
                **self._log_extra(request, identity, payload, started),
                "prompt_chars": prompt_chars,
            },
        )
        return JSONResponse(status_code=200, content=completion)

    async def _handle_stream(
        self, request: Request, identity: SessionIdentity, payload: ChatCompletionRequest
    ) -> Response:
        started = perf_counter()
        try:
            upstream = await self._gateway_client.complete_stream(payload.upstream_body(stream=True))
        except GatewayError as exc:
            self._fail_upstream(request, identity, payload, started, exc)

        if not upstream.is_success:
            body = await upstream.read_text()
            await upstream.aclose()
            failure = GatewayHTTPError(upstream.status_code, body, upstream.reason_phrase)
            self._fail_upstream(request, identity, payload, started, failure)

        def on_finish(result: RelayResult) -> None:
            self._finish_stream(request, identity, payload, started, result)

        relay = StreamRelay(upstream, on_finish=on_finish)
        try:
            has_body = await relay.prime()
        except GatewayError as exc:
            self._fail_upstream(request, identity, payload, started, exc)

        if not has_body:
            self._record(
                identity, payload, started, success=False, error_message=EMPTY_STREAM_MESSAGE
            )
            raise AppError(502, ErrorCode.GATEWAY_ERROR.value, EMPTY_STREAM_MESSAGE)

        return RelayStreamingResponse(relay, headers=STREAM_HEADERS)

    def _finish_stream(
        self,
        request: Request,
        identity: SessionIdentity,
        payload: ChatCompletionRequest,
        started: float,
        result: RelayResult,
    ) -> None:
        extra = {
            **self._log_extra(request, identity, payload, started),
            "response_bytes": result.bytes_relayed,
            "relay_outcome": result.outcome.value,
        }
        if result.outcome is RelayOutcome.COMPLETED:
            self._record(
                identity, payload, started, success=True, response_chars=result.bytes_relayed
            )
            logger.info("stream completed", extra=extra)
        elif result.outcome is RelayOutcome.UPSTREAM_FAILED:
            self._record(
                identity,
                payload,
                started,
                success=False,
                error_message=result.error,
                response_chars=result.bytes_relayed,
            )
            logger.warning("stream aborted by upstream", extra=extra)
        else:
            logger.info("stream closed by client", extra=extra)

    def _fail_upstream(
        self,
        request: Request,
        identity: SessionIdentity,
        payload: ChatCompletionRequest,
        started: float,
        failure: Exception,
    ) -> NoReturn:
        classified = classify(failure)
        raw_message = getattr(failure, "message", None) or str(failure)
        logger.error(
            "%s: %s",
            classified.code.value,
            raw_message,
            extra=self._log_extra(request, identity, payload, started, classified.code),
        )
        self._record(identity, payload, started, success=False, error_message=raw_message)
        raise AppError(502, classified.code.value, classified.message)

    def _record(
        self,
        identity: SessionIdentity,
        payload: ChatCompletionRequest,
        started: float,
        success: bool,
        error_message: str = "",
        response_chars: int = 0,
    ) -> None:
        self._audit_logger.log(
            ChatLogEntry(
                timestamp=utc_timestamp(),
                identity=identity.email,
                model=payload.model,
                latency_ms=_elapsed_ms(started),
                success=success,
                error_message=error_message,
                prompt_chars=payload.prompt_chars,
                response_chars=response_chars,
            )
        )

    @staticmethod
    def _log_extra(
        request: Request,
        identity: SessionIdentity,
        payload: ChatCompletionRequest,
        started: float,
        error_code: ErrorCode | None = None,
    ) -> dict[str, object]:
        extra: dict[str, object] = {
            "request_id": getattr(request.state, "request_id", None),
            "identity": identity.email,
            "model": payload.model,
            "latency_ms": _elapsed_ms(started),
        }
        if error_code is not None:
            extra["error_code"] = error_code.value
        return extra


def _elapsed_ms(started: float) -> int:
    return int((perf_counter() - started) * 1000)
