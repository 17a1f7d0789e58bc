"""Failure signals raised by the gateway client.

These carry the full technical detail (status codes, body snippets, transport
errors) for server logs and the audit trail.  They are never shown to API
callers directly; :mod:`chatproxy.gateway.classifier` turns them into safe
messages.
"""

BODY_SNIPPET_LIMIT = 500


class GatewayError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GatewayNotConfiguredError(GatewayError):
    def __init__(self, setting: str):
        super().__init__(f"{setting} is not set")
        self.setting = setting


class GatewayTimeoutError(GatewayError):
    """The upstream did not answer within the deadline."""


class GatewayUnreachableError(GatewayError):
    """Connection refused, DNS failure or another transport-level error."""


class GatewayHTTPError(GatewayError):
    def __init__(self, status_code: int, body: str = "", reason: str = ""):
        snippet = body[:BODY_SNIPPET_LIMIT]
        super().__init__(f"Gateway error [{status_code}]: {snippet or reason}")
        self.status_code = status_code
        self.body = snippet


class GatewayResponseFormatError(GatewayError):
    """The upstream answered 2xx with something that is not a completion payload."""
