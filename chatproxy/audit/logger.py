"""Best-effort request log.

``log`` and ``read_recent`` never raise.  The backend is chosen once, on first
use, and kept for the process lifetime.  When a write to the structured store
fails at call time the single entry is appended to the line store instead, and
``read_recent`` merges both so the entry is not lost from view.
"""

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from chatproxy.audit.entry import ChatLogEntry
from chatproxy.audit.sinks import NDJSON_FILENAME, JsonlLogSink, LogSink, open_log_sink

logger = logging.getLogger("chatproxy.audit")

SinkFactory = Callable[[], LogSink]


class AuditLogger:
    def __init__(
        self,
        logs_dir: Path,
        schema: dict[str, Any] | None = None,
        sink_factory: SinkFactory | None = None,
    ):
        self._fallback = JsonlLogSink(path=logs_dir / NDJSON_FILENAME, schema=schema)
        self._sink_factory = sink_factory or (lambda: open_log_sink(logs_dir, schema))
        self._sink: LogSink | None = None
        self._lock = threading.Lock()

    @property
    def sink(self) -> LogSink:
        with self._lock:
            if self._sink is None:
                try:
                    sink = self._sink_factory()
                except Exception:
                    logger.exception("log sink factory failed, using NDJSON")
                    sink = self._fallback
                # A factory that fell back to the line store on its own must
                # share the fallback instance, or reads would see every line twice.
                if sink is not self._fallback and sink.path == self._fallback.path:
                    sink = self._fallback
                self._sink = sink
            return self._sink

    @property
    def backend(self) -> str:
        return self.sink.backend

    def log(self, entry: ChatLogEntry) -> None:
        sink = self.sink
        try:
            sink.write(entry)
            return
        except Exception:
            if sink is self._fallback:
                logger.exception("NDJSON log write failed; entry dropped")
                return
            logger.exception("%s log write failed, retrying with NDJSON", sink.backend)

        try:
            self._fallback.write(entry)
        except Exception:
            logger.exception("NDJSON fallback write failed; entry dropped")

    def read_recent(self, limit: int = 50) -> list[ChatLogEntry]:
        if limit <= 0:
            return []
        sink = self.sink
        entries: list[ChatLogEntry] = []
        try:
            entries.extend(sink.read_recent(limit))
        except Exception:
            logger.exception("%s log read failed", sink.backend)

        if sink is not self._fallback:
            try:
                entries.extend(self._fallback.read_recent(limit))
            except Exception:
                logger.exception("NDJSON log read failed")

        # Stable sort keeps each backend's own newest-first order for equal timestamps.
        entries.sort(key=lambda entry: entry.timestamp, reverse=True)
        return entries[:limit]

    def close(self) -> None:
        with self._lock:
            sink, self._sink = self._sink, None
        close = getattr(sink, "close", None)
        if close is None:
            return
        try:
            close()
        except Exception:
            logger.exception("failed to close %s request log", sink.backend)
