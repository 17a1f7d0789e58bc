"""HTTP client for the upstream chat-completion gateway."""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from chatproxy.config.overrides import GatewaySettings
from chatproxy.gateway.errors import (
    GatewayHTTPError,
    GatewayNotConfiguredError,
    GatewayResponseFormatError,
    GatewayTimeoutError,
    GatewayUnreachableError,
)

logger = logging.getLogger("chatproxy.gateway")

HEALTH_STATUSES = {"ok", "degraded", "down"}


@dataclass(frozen=True)
class HealthReport:
    status: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"status": self.status, "message": self.message}


@dataclass(frozen=True)
class ConnectionCheck:
    ok: bool
    message: str

    def as_dict(self) -> dict[str, object]:
        return {"ok": self.ok, "message": self.message}


class UpstreamStream:
    """A live upstream response whose body has not been read yet.

    Owns the ``httpx.AsyncClient`` that produced it; :meth:`aclose` releases
    both the response and the connection pool.  ``first_chunk_timeout_s``
    bounds the wait for the first body bytes; later reads are unbounded.
    """

    def __init__(
        self,
        response: httpx.Response,
        client: httpx.AsyncClient,
        first_chunk_timeout_s: float | None = None,
    ):
        self._response = response
        self._client = client
        self._closed = False
        self.first_chunk_timeout_s = first_chunk_timeout_s

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def is_success(self) -> bool:
        return self._response.is_success

    @property
    def reason_phrase(self) -> str:
        return self._response.reason_phrase

    @property
    def content_type(self) -> str:
        return self._response.headers.get("content-type", "")

    async def read_text(self) -> str:
        try:
            await self._response.aread()
        except httpx.HTTPError as exc:
            logger.warning("failed to read upstream error body: %s", exc)
            return ""
        return self._response.text

    async def chunks(self) -> AsyncGenerator[bytes, None]:
        """Yield body bytes in the order and chunking they arrive.

        Content-encoding is undone here; the relay never forwards the
        upstream ``Content-Encoding`` header.
        """
        try:
            async for chunk in self._response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError(f"Gateway stream timed out: {exc!r}") from exc
        except httpx.HTTPError as exc:
            raise GatewayUnreachableError(f"Gateway stream failed: {exc!r}") from exc

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class GatewayClient:
    """Buffered and streaming calls against one logical upstream.

    Settings are fetched through ``settings_source`` on every call so that
    changes made on the settings page apply to the next request.
    """

    def __init__(
        self,
        settings_source: Callable[[], GatewaySettings],
        timeout_s: float = 30.0,
        probe_timeout_s: float = 5.0,
        health_path: str = "/health",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings_source = settings_source
        self._timeout_s = timeout_s
        self._probe_timeout_s = probe_timeout_s
        self._health_path = health_path
        self._transport = transport

    def _client(self, timeout: httpx.Timeout | float | None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _target(self) -> tuple[str, dict[str, str]]:
        settings = self._settings_source()
        if not settings.gateway_url:
            raise GatewayNotConfiguredError("gateway_url")
        if not settings.gateway_token:
            raise GatewayNotConfiguredError("gateway_token")
        url = f"{settings.gateway_url.rstrip('/')}{settings.chat_path}"
        headers = {
            "Authorization": f"Bearer {settings.gateway_token}",
            "Content-Type": "application/json",
        }
        return url, headers

    async def complete(self, body: dict[str, Any]) -> dict[str, Any]:
        url, headers = self._target()
        logger.info("gateway request: POST %s", url)
        try:
            async with self._client(self._timeout_s) as client:
                resp = await asyncio.wait_for(
                    client.post(url, json=body, headers=headers), timeout=self._timeout_s
                )
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise GatewayTimeoutError(f"Gateway request timed out: {exc!r}") from exc
        except httpx.HTTPError as exc:
            raise GatewayUnreachableError(f"Cannot connect to gateway: {exc!r}") from exc

        logger.info("gateway response: %s %s", resp.status_code, url)
        self._raise_for_status(resp)

        try:
            parsed = resp.json()
        except ValueError as exc:
            raise GatewayResponseFormatError(
                f"Gateway returned non-JSON body ({resp.headers.get('content-type', 'unknown')}): "
                f"{exc}"
            ) from exc
        if not isinstance(parsed, dict):
            raise GatewayResponseFormatError("Gateway returned JSON that is not an object")
        return parsed

    async def complete_stream(self, body: dict[str, Any]) -> UpstreamStream:
        """Send the request and return as soon as status and headers arrive.

        The timeout bounds time-to-headers here and, through the returned
        stream, time-to-first-chunk.  Reads after the first chunk are unbounded.
        """
        url, headers = self._target()
        logger.info("gateway stream request: POST %s", url)
        client = self._client(httpx.Timeout(None))
        request = client.build_request("POST", url, json=body, headers=headers)
        try:
            resp = await asyncio.wait_for(
                client.send(request, stream=True), timeout=self._timeout_s
            )
        except (TimeoutError, httpx.TimeoutException) as exc:
            await client.aclose()
            raise GatewayTimeoutError(f"Gateway stream request timed out: {exc!r}") from exc
        except httpx.HTTPError as exc:
            await client.aclose()
            raise GatewayUnreachableError(f"Cannot connect to gateway: {exc!r}") from exc
        except BaseException:
            await client.aclose()
            raise

        logger.info("gateway stream response: %s %s", resp.status_code, url)
        return UpstreamStream(resp, client, first_chunk_timeout_s=self._timeout_s)

    async def check_health(self) -> HealthReport:
        settings = self._settings_source()
        if not settings.gateway_url:
            return HealthReport("down", "CHATPROXY_GATEWAY_URL is not set")
        if not settings.gateway_token:
            return HealthReport("down", "CHATPROXY_GATEWAY_TOKEN is not set")

        health = await self._probe(settings.gateway_url, settings.gateway_token, self._health_path)
        if health is not None and health.is_success:
            try:
                data = health.json()
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict) and data.get("status") in HEALTH_STATUSES:
                return HealthReport(str(data["status"]), str(data.get("message", "")))
            return HealthReport("ok", "Health endpoint responded")

        root = await self._probe(settings.gateway_url, settings.gateway_token, "/")
        if root is not None and root.is_success:
            return HealthReport("ok", "Gateway reachable (control UI responded)")

        return HealthReport("down", f"Gateway unreachable (tried {self._health_path} and /)")

    async def test_connection(self, url: str | None = None, token: str | None = None) -> ConnectionCheck:
        settings = self._settings_source()
        target = (url or "").strip() or settings.gateway_url
        bearer = (token or "").strip() or settings.gateway_token
        if not target:
            return ConnectionCheck(False, "No gateway URL configured")

        for path in (self._health_path, "/"):
            resp = await self._probe(target, bearer, path)
            if resp is None:
                continue
            if resp.is_success:
                detail = ""
                try:
                    data = resp.json()
                except json.JSONDecodeError:
                    data = None
                if isinstance(data, dict) and data.get("status"):
                    detail = f" (status: {data['status']})"
                return ConnectionCheck(True, f"Gateway reachable{detail}")
            if resp.status_code in {401, 403}:
                return ConnectionCheck(
                    False, f"Gateway responded HTTP {resp.status_code}; check your token"
                )

        return ConnectionCheck(False, f"Gateway unreachable; {self._health_path} and / both failed")

    async def _probe(self, base_url: str, token: str, path: str) -> httpx.Response | None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            async with self._client(self._probe_timeout_s) as client:
                return await client.get(f"{base_url.rstrip('/')}{path}", headers=headers)
        except httpx.HTTPError as exc:
            logger.info("gateway probe %s failed: %r", path, exc)
            return None

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        try:
            text = resp.text
        except (UnicodeDecodeError, httpx.HTTPError):
            text = ""
        raise GatewayHTTPError(resp.status_code, text, resp.reason_phrase)
