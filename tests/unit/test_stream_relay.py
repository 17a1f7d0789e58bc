import asyncio
from collections.abc import AsyncIterator

import httpx
import pytest

from chatproxy.config.overrides import GatewaySettings
from chatproxy.gateway.client import GatewayClient, UpstreamStream
from chatproxy.gateway.errors import GatewayTimeoutError
from chatproxy.services.relay import (
    RelayOutcome,
    RelayResult,
    RelayStreamingResponse,
    StreamRelay,
)

CHUNKS = [b"data: {\"delta\": \"Hel\"}\n\n", b"data: {\"delta\": \"lo\"}\n\n", b"data: [DONE]\n\n"]


class _Chunks(httpx.AsyncByteStream):
    def __init__(
        self, chunks: list[bytes], fail_after: int | None = None, stall_s: float = 0.0
    ) -> None:
        self._chunks = chunks
        self._fail_after = fail_after
        self._stall_s = stall_s
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self._stall_s:
            await asyncio.sleep(self._stall_s)
        for index, chunk in enumerate(self._chunks):
            if self._fail_after is not None and index == self._fail_after:
                raise httpx.ReadError("connection reset by peer")
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


async def _open(stream: _Chunks, timeout_s: float = 30.0) -> UpstreamStream:
    settings = GatewaySettings(
        gateway_url="http://gateway.test",
        gateway_token="gw-token",
        chat_path="/v1/chat/completions",
        chat_mode="enabled",
        default_model="gateway:main",
    )
    client = GatewayClient(
        settings_source=lambda: settings,
        timeout_s=timeout_s,
        transport=httpx.MockTransport(lambda _: httpx.Response(200, stream=stream)),
    )
    return await client.complete_stream({"model": "gateway:main", "messages": [], "stream": True})


def test_relay_is_transparent_and_counts_bytes() -> None:
    finished: list[RelayResult] = []

    async def scenario() -> list[bytes]:
        stream = _Chunks(CHUNKS)
        relay = StreamRelay(await _open(stream), on_finish=finished.append)
        assert await relay.prime()
        received = [chunk async for chunk in relay.iterate()]
        assert stream.closed
        return received

    received = asyncio.run(scenario())

    assert received == CHUNKS
    assert finished == [
        RelayResult(RelayOutcome.COMPLETED, bytes_relayed=sum(len(chunk) for chunk in CHUNKS))
    ]


def test_empty_body_is_detected_before_relay() -> None:
    finished: list[RelayResult] = []

    async def scenario() -> tuple[bool, bool]:
        stream = _Chunks([])
        relay = StreamRelay(await _open(stream), on_finish=finished.append)
        return await relay.prime(), stream.closed

    has_body, closed = asyncio.run(scenario())
    assert not has_body
    assert closed
    assert finished == []


def test_stalled_first_chunk_times_out() -> None:
    finished: list[RelayResult] = []

    async def scenario() -> tuple[float, bool]:
        stream = _Chunks(CHUNKS, stall_s=5.0)
        relay = StreamRelay(await _open(stream, timeout_s=0.05), on_finish=finished.append)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(GatewayTimeoutError):
            await relay.prime()
        return loop.time() - started, stream.closed

    elapsed, closed = asyncio.run(scenario())

    assert elapsed < 2.0
    assert closed
    assert finished == []


def test_client_disconnect_is_an_outcome_not_an_error() -> None:
    finished: list[RelayResult] = []

    async def scenario() -> bool:
        stream = _Chunks(CHUNKS)
        relay = StreamRelay(await _open(stream), on_finish=finished.append)
        await relay.prime()
        iterator = relay.iterate()
        await anext(iterator)
        await iterator.aclose()
        await relay.aclose()
        return stream.closed

    closed = asyncio.run(scenario())

    assert closed
    assert finished == [RelayResult(RelayOutcome.CLIENT_DISCONNECTED, bytes_relayed=len(CHUNKS[0]))]


def test_disconnect_before_first_pull_releases_upstream() -> None:
    finished: list[RelayResult] = []

    async def scenario() -> bool:
        stream = _Chunks(CHUNKS)
        relay = StreamRelay(await _open(stream), on_finish=finished.append)
        await relay.prime()
        relay.mark_disconnected()
        await relay.aclose()
        return stream.closed

    assert asyncio.run(scenario())
    assert [result.outcome for result in finished] == [RelayOutcome.CLIENT_DISCONNECTED]
    assert finished[0].bytes_relayed == 0


def test_upstream_failure_mid_stream_ends_cleanly() -> None:
    finished: list[RelayResult] = []

    async def scenario() -> list[bytes]:
        relay = StreamRelay(await _open(_Chunks(CHUNKS, fail_after=2)), on_finish=finished.append)
        await relay.prime()
        return [chunk async for chunk in relay.iterate()]

    received = asyncio.run(scenario())

    assert received == CHUNKS[:2]
    assert len(finished) == 1
    assert finished[0].outcome is RelayOutcome.UPSTREAM_FAILED
    assert finished[0].bytes_relayed == len(CHUNKS[0]) + len(CHUNKS[1])
    assert "Gateway stream failed" in finished[0].error


def test_streaming_response_survives_client_disconnect() -> None:
    finished: list[RelayResult] = []
    sent: list[dict] = []

    async def receive() -> dict:
        await asyncio.Event().wait()
        return {"type": "http.disconnect"}

    async def send(message: dict) -> None:
        if message["type"] == "http.response.body" and message.get("body"):
            raise OSError("broken pipe")
        sent.append(message)

    async def scenario() -> bool:
        stream = _Chunks(CHUNKS)
        relay = StreamRelay(await _open(stream), on_finish=finished.append)
        await relay.prime()
        response = RelayStreamingResponse(relay, headers={"Cache-Control": "no-cache"})
        scope = {
            "type": "http",
            "method": "POST",
            "path": "/api/chat",
            "headers": [],
            "asgi": {"version": "3.0", "spec_version": "2.4"},
        }
        await response(scope, receive, send)
        return stream.closed

    assert asyncio.run(scenario())
    assert sent[0]["type"] == "http.response.start"
    assert sent[0]["status"] == 200
    assert [result.outcome for result in finished] == [RelayOutcome.CLIENT_DISCONNECTED]
