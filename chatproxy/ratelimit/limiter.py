"""Fixed-window request limiting.

Each key gets a counter and the moment its window closes.  The first request
for a key (or the first one after the window closed) opens a fresh window with
a count of one; later requests inside the window increment the counter until
the limit is reached, after which callers are told how long to wait.

State is in-process only.  Every read-modify-write happens under a
``threading.Lock`` so concurrent callers can never both observe spare
capacity in an exhausted window.  Expired windows are dropped by a periodic
sweep that runs as a cancellable asyncio task owned by the limiter.
"""

import asyncio
import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass
from time import monotonic

from fastapi import Request

logger = logging.getLogger("chatproxy.ratelimit")

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    limit: int
    window_seconds: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after_ms: int | None = None

    @property
    def retry_after_seconds(self) -> int:
        """Seconds for a ``Retry-After`` header, rounded up."""
        if self.retry_after_ms is None:
            return 0
        return max(1, math.ceil(self.retry_after_ms / 1000))


@dataclass
class RateRecord:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    def __init__(
        self,
        policy: RateLimitPolicy,
        sweep_interval_s: float = 300.0,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._policy = policy
        self._sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._records: dict[str, RateRecord] = {}
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def policy(self) -> RateLimitPolicy:
        return self._policy

    def check(self, key: str) -> RateLimitResult:
        """Consume one unit for ``key`` if the current window allows it."""
        with self._lock:
            now = self._clock()
            record = self._records.get(key)
            if record is None or now >= record.reset_at:
                self._records[key] = RateRecord(
                    count=1, reset_at=now + self._policy.window_seconds
                )
                return RateLimitResult(allowed=True)

            if record.count < self._policy.limit:
                record.count += 1
                return RateLimitResult(allowed=True)

            retry_after_ms = max(1, math.ceil((record.reset_at - now) * 1000))
        logger.info(
            "rate limit exceeded",
            extra={"identity": key, "error_code": "RATE_LIMITED"},
        )
        return RateLimitResult(allowed=False, retry_after_ms=retry_after_ms)

    def sweep(self) -> int:
        """Delete records whose window has closed. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, record in self._records.items() if record.reset_at <= now]
            for key in expired:
                del self._records[key]
        return len(expired)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._records)

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_forever(), name=f"ratelimit-sweep-{self._policy.name}"
        )

    async def stop(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            removed = self.sweep()
            if removed:
                logger.debug(
                    "swept %d expired %s rate-limit records, %d still tracked",
                    removed,
                    self._policy.name,
                    self.tracked_keys(),
                )


def client_address(request: Request) -> str:
    """Originating client address: first hop of ``x-forwarded-for``, else the peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


def rate_limit_key(request: Request, identity: str | None) -> str:
    """Prefer the verified identity; fall back to the client address.

    Requests with neither share a single ``ip:unknown`` bucket.
    """
    if identity:
        return f"identity:{identity}"
    return f"ip:{client_address(request)}"


def login_rate_limit_key(request: Request) -> str:
    # Never keyed by the submitted email: differential limiting would leak
    # which accounts exist.
    return f"login:{client_address(request)}"
