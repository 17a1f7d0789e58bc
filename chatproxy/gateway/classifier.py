"""Map gateway failures onto the stable error taxonomy shown to callers.

The order of checks matters: transport-level signals first, then HTTP status
codes, then payload format problems.  Messages are fixed strings; nothing from
the failure itself (URLs, tokens, bodies, tracebacks) is copied into them.
"""

from dataclasses import dataclass
from enum import Enum

from chatproxy.gateway.errors import (
    GatewayHTTPError,
    GatewayNotConfiguredError,
    GatewayResponseFormatError,
    GatewayTimeoutError,
    GatewayUnreachableError,
)


class ErrorCode(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    CHAT_DISABLED = "CHAT_DISABLED"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    GATEWAY_NOT_REACHABLE = "GATEWAY_NOT_REACHABLE"
    ENDPOINT_NOT_FOUND = "ENDPOINT_NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    NOT_REST_COMPATIBLE = "NOT_REST_COMPATIBLE"
    AUTH_ERROR = "AUTH_ERROR"
    GATEWAY_ERROR = "GATEWAY_ERROR"


@dataclass(frozen=True)
class ChatErrorResult:
    code: ErrorCode
    message: str


TIMEOUT_RESULT = ChatErrorResult(
    ErrorCode.GATEWAY_TIMEOUT,
    "Gateway did not respond in time (30-second timeout). "
    "Make sure the gateway is running and responsive.",
)
NOT_REACHABLE_RESULT = ChatErrorResult(
    ErrorCode.GATEWAY_NOT_REACHABLE,
    "Gateway is not reachable. Make sure the gateway is running and "
    "CHATPROXY_GATEWAY_URL points to the right address.",
)
NOT_REST_COMPATIBLE_RESULT = ChatErrorResult(
    ErrorCode.NOT_REST_COMPATIBLE,
    "Gateway returned a non-JSON response (possibly an HTML control UI or "
    "WebSocket endpoint). The REST chat API may not be configured yet. "
    "Set CHATPROXY_CHAT_MODE=disabled to hide chat until it is.",
)

STATUS_RESULTS: dict[int, ChatErrorResult] = {
    404: ChatErrorResult(
        ErrorCode.ENDPOINT_NOT_FOUND,
        "Gateway responded but the chat endpoint was not found (404). "
        "This gateway may not expose a REST chat API yet. "
        "Set CHATPROXY_CHAT_MODE=disabled to hide chat until it does.",
    ),
    405: ChatErrorResult(
        ErrorCode.METHOD_NOT_ALLOWED,
        "Gateway rejected the request method (405). "
        "The chat endpoint may not accept POST on the configured path. "
        "Check CHATPROXY_CHAT_PATH.",
    ),
    401: ChatErrorResult(
        ErrorCode.AUTH_ERROR,
        "Gateway rejected the request (auth error). "
        "Check that CHATPROXY_GATEWAY_TOKEN is correct.",
    ),
    403: ChatErrorResult(
        ErrorCode.AUTH_ERROR,
        "Gateway rejected the request (auth error). "
        "Check that CHATPROXY_GATEWAY_TOKEN is correct.",
    ),
}
SERVER_ERROR_RESULT = ChatErrorResult(
    ErrorCode.GATEWAY_ERROR,
    "The gateway returned a server error. Check the gateway process logs.",
)
SERVER_ERROR_STATUSES = frozenset({500, 502, 503})

SETTING_ENV_NAMES = {
    "gateway_url": "CHATPROXY_GATEWAY_URL",
    "gateway_token": "CHATPROXY_GATEWAY_TOKEN",
}


def classify(failure: BaseException) -> ChatErrorResult:
    if isinstance(failure, (GatewayTimeoutError, TimeoutError)):
        return TIMEOUT_RESULT

    if isinstance(failure, (GatewayUnreachableError, ConnectionError)):
        return NOT_REACHABLE_RESULT

    if isinstance(failure, GatewayHTTPError):
        if failure.status_code in STATUS_RESULTS:
            return STATUS_RESULTS[failure.status_code]
        if failure.status_code in SERVER_ERROR_STATUSES:
            return SERVER_ERROR_RESULT
        return ChatErrorResult(
            ErrorCode.GATEWAY_ERROR,
            f"The gateway rejected the request (HTTP {failure.status_code}).",
        )

    if isinstance(failure, (GatewayResponseFormatError, ValueError)):
        return NOT_REST_COMPATIBLE_RESULT

    if isinstance(failure, GatewayNotConfiguredError):
        setting = SETTING_ENV_NAMES.get(failure.setting, failure.setting)
        return ChatErrorResult(
            ErrorCode.GATEWAY_ERROR,
            f"Gateway is not configured. Set {setting} on the settings page or in the environment.",
        )

    return ChatErrorResult(
        ErrorCode.GATEWAY_ERROR,
        "The gateway request failed. Check the server logs for details.",
    )
