"""Transparent byte-counting passthrough for upstream streams.

The relay forwards upstream bytes unmodified and reports exactly one
:class:`RelayResult` through ``on_finish`` when the pipe ends, whichever way
it ends.  A downstream disconnect is an ordinary outcome here, not an error.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from enum import Enum

import anyio
from starlette.requests import ClientDisconnect
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from chatproxy.gateway.client import UpstreamStream
from chatproxy.gateway.errors import GatewayError, GatewayTimeoutError

logger = logging.getLogger("chatproxy.chat")


class RelayOutcome(Enum):
    COMPLETED = "completed"
    UPSTREAM_FAILED = "upstream_failed"
    CLIENT_DISCONNECTED = "client_disconnected"


@dataclass(frozen=True)
class RelayResult:
    outcome: RelayOutcome
    bytes_relayed: int
    error: str = ""


class StreamRelay:
    def __init__(
        self,
        upstream: UpstreamStream,
        on_finish: Callable[[RelayResult], None] | None = None,
    ):
        self._upstream = upstream
        self._on_finish = on_finish
        self._chunks = upstream.chunks()
        self._first: bytes | None = None
        self._bytes = 0
        self._result: RelayResult | None = None

    async def prime(self) -> bool:
        """Pull the first chunk. Returns False if the upstream body is empty.

        Gateway failures while waiting for the first chunk propagate so the
        caller can still answer with a classified error.  The wait is bounded
        by the upstream's ``first_chunk_timeout_s``.
        """
        try:
            first = await asyncio.wait_for(
                self._next_chunk(), timeout=self._upstream.first_chunk_timeout_s
            )
        except TimeoutError as exc:
            await self._upstream.aclose()
            raise GatewayTimeoutError(
                f"Gateway stream sent no data within {self._upstream.first_chunk_timeout_s}s"
            ) from exc
        except BaseException:
            await self._upstream.aclose()
            raise
        if first is None:
            await self._upstream.aclose()
            return False
        self._first = first
        return True

    async def _next_chunk(self) -> bytes | None:
        return await anext(self._chunks, None)

    async def iterate(self) -> AsyncGenerator[bytes, None]:
        try:
            if self._first is not None:
                chunk, self._first = self._first, None
                self._bytes += len(chunk)
                yield chunk
            async for chunk in self._chunks:
                self._bytes += len(chunk)
                yield chunk
        except GatewayError as exc:
            logger.warning(
                "upstream stream aborted: %s",
                exc.message,
                extra={"response_bytes": self._bytes},
            )
            self._finish(RelayOutcome.UPSTREAM_FAILED, exc.message)
        except (GeneratorExit, asyncio.CancelledError):
            self._finish(RelayOutcome.CLIENT_DISCONNECTED)
            raise
        else:
            self._finish(RelayOutcome.COMPLETED)
        finally:
            with anyio.CancelScope(shield=True):
                await self._chunks.aclose()
                await self._upstream.aclose()

    def mark_disconnected(self) -> None:
        self._finish(RelayOutcome.CLIENT_DISCONNECTED)

    async def aclose(self) -> None:
        """Release the upstream connection; safe to call more than once."""
        with anyio.CancelScope(shield=True):
            await self._upstream.aclose()
        self._finish(RelayOutcome.CLIENT_DISCONNECTED)

    def _finish(self, outcome: RelayOutcome, error: str = "") -> None:
        if self._result is not None:
            return
        self._result = RelayResult(outcome=outcome, bytes_relayed=self._bytes, error=error)
        if self._on_finish is not None:
            self._on_finish(self._result)


class RelayStreamingResponse(StreamingResponse):
    """StreamingResponse that always releases the relay, even on disconnect."""

    def __init__(self, relay: StreamRelay, headers: dict[str, str] | None = None):
        self._iterator = relay.iterate()
        super().__init__(
            self._iterator,
            status_code=200,
            headers=headers,
            media_type="text/event-stream",
        )
        self._relay = relay

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except (ClientDisconnect, OSError):
            self._relay.mark_disconnected()
        finally:
            with anyio.CancelScope(shield=True):
                await self._iterator.aclose()
            await self._relay.aclose()
