import pytest

from chatproxy.gateway.classifier import ErrorCode, classify
from chatproxy.gateway.errors import (
    GatewayHTTPError,
    GatewayNotConfiguredError,
    GatewayResponseFormatError,
    GatewayTimeoutError,
    GatewayUnreachableError,
)

SECRET_URL = "http://10.1.2.3:19001/v1/chat/completions"
SECRET_TOKEN = "sk-super-secret-token"


@pytest.mark.parametrize(
    ("failure", "expected"),
    [
        (GatewayTimeoutError(f"timed out calling {SECRET_URL}"), ErrorCode.GATEWAY_TIMEOUT),
        (TimeoutError(), ErrorCode.GATEWAY_TIMEOUT),
        (GatewayUnreachableError(f"connection refused {SECRET_URL}"), ErrorCode.GATEWAY_NOT_REACHABLE),
        (ConnectionRefusedError(), ErrorCode.GATEWAY_NOT_REACHABLE),
        (GatewayHTTPError(404, "Not Found"), ErrorCode.ENDPOINT_NOT_FOUND),
        (GatewayHTTPError(405, "Method Not Allowed"), ErrorCode.METHOD_NOT_ALLOWED),
        (GatewayHTTPError(401, f"bad token {SECRET_TOKEN}"), ErrorCode.AUTH_ERROR),
        (GatewayHTTPError(403, "forbidden"), ErrorCode.AUTH_ERROR),
        (GatewayHTTPError(500, "boom"), ErrorCode.GATEWAY_ERROR),
        (GatewayHTTPError(502, "bad gateway"), ErrorCode.GATEWAY_ERROR),
        (GatewayHTTPError(503, "unavailable"), ErrorCode.GATEWAY_ERROR),
        (GatewayResponseFormatError("<html>control ui</html>"), ErrorCode.NOT_REST_COMPATIBLE),
        (ValueError("Expecting value: line 1 column 1"), ErrorCode.NOT_REST_COMPATIBLE),
        (RuntimeError("something odd"), ErrorCode.GATEWAY_ERROR),
    ],
)
def test_classify_codes(failure: BaseException, expected: ErrorCode) -> None:
    assert classify(failure).code is expected


def test_classify_is_pure() -> None:
    failure = GatewayHTTPError(404, "Not Found")
    assert classify(failure) == classify(failure)
    assert classify(GatewayHTTPError(418, "teapot")) == classify(GatewayHTTPError(418, "other"))


def test_other_status_reports_code_only() -> None:
    result = classify(GatewayHTTPError(418, f"teapot at {SECRET_URL}"))
    assert result.code is ErrorCode.GATEWAY_ERROR
    assert "418" in result.message
    assert "teapot" not in result.message


def test_not_configured_names_the_setting() -> None:
    result = classify(GatewayNotConfiguredError("gateway_token"))
    assert result.code is ErrorCode.GATEWAY_ERROR
    assert "CHATPROXY_GATEWAY_TOKEN" in result.message


@pytest.mark.parametrize(
    "failure",
    [
        GatewayTimeoutError(f"ReadTimeout({SECRET_URL!r}) with Bearer {SECRET_TOKEN}"),
        GatewayUnreachableError(f"ConnectError({SECRET_URL!r}) Bearer {SECRET_TOKEN}"),
        GatewayHTTPError(401, f'{{"detail": "invalid token {SECRET_TOKEN}"}}'),
        GatewayHTTPError(500, f"Traceback (most recent call last): {SECRET_URL}"),
        GatewayHTTPError(499, f"{SECRET_URL} {SECRET_TOKEN}"),
        GatewayResponseFormatError(f"non-JSON from {SECRET_URL}"),
        RuntimeError(f"unexpected failure at {SECRET_URL} using {SECRET_TOKEN}"),
    ],
)
def test_messages_never_leak_urls_or_tokens(failure: BaseException) -> None:
    message = classify(failure).message
    assert SECRET_URL not in message
    assert "10.1.2.3" not in message
    assert SECRET_TOKEN not in message
    assert "Traceback" not in message


def test_http_error_keeps_raw_detail_for_logs() -> None:
    failure = GatewayHTTPError(404, "x" * 2000)
    assert failure.message.startswith("Gateway error [404]: ")
    assert len(failure.body) == 500


def test_http_error_falls_back_to_reason() -> None:
    failure = GatewayHTTPError(404, "", "Not Found")
    assert failure.message == "Gateway error [404]: Not Found"
