"""Storage backends for the chat request log."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from jsonschema import ValidationError, validate

from chatproxy.audit.entry import ChatLogEntry

logger = logging.getLogger("chatproxy.audit")

SQLITE_FILENAME = "requests.db"
NDJSON_FILENAME = "requests.ndjson"


class LogSink(Protocol):
    backend: str
    path: Path

    def write(self, entry: ChatLogEntry) -> None:
        """Persist one entry. May raise; the caller decides how to recover."""

    def read_recent(self, limit: int) -> list[ChatLogEntry]:
        """Return up to ``limit`` entries, newest first."""


@dataclass
class JsonlLogSink:
    path: Path
    schema: dict[str, Any] | None = None
    backend: str = "ndjson"
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def write(self, entry: ChatLogEntry) -> None:
        line = json.dumps(entry.as_dict(), ensure_ascii=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as file_handle:
                file_handle.write(line)
                file_handle.write("\n")

    def read_recent(self, limit: int) -> list[ChatLogEntry]:
        if limit <= 0 or not self.path.exists():
            return []
        tail: deque[ChatLogEntry] = deque(maxlen=limit)
        with self.path.open("r", encoding="utf-8") as file_handle:
            for line_number, raw_line in enumerate(file_handle, start=1):
                line = raw_line.strip()
                if not line:
                    continue
                entry = self._parse_line(line, line_number)
                if entry is not None:
                    tail.append(entry)
        return list(reversed(tail))

    def _parse_line(self, line: str, line_number: int) -> ChatLogEntry | None:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("skipping unreadable log line %d in %s", line_number, self.path)
            return None
        if self.schema is not None:
            try:
                validate(instance=payload, schema=self.schema)
            except ValidationError as exc:
                logger.warning(
                    "skipping malformed log line %d in %s: %s",
                    line_number,
                    self.path,
                    exc.message,
                )
                return None
        elif not isinstance(payload, dict):
            return None
        try:
            return ChatLogEntry.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            logger.warning("skipping incomplete log line %d in %s", line_number, self.path)
            return None


class SQLiteLogSink:
    backend = "sqlite"

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        # One shared connection for the process lifetime; access is serialized
        # by ``_lock``.
        self._connection = sqlite3.connect(str(self.path), check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._lock:
            self._connection.execute("PRAGMA journal_mode=WAL")
            self._connection.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_requests (
                    id             INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp      TEXT    NOT NULL,
                    identity       TEXT    NOT NULL,
                    model          TEXT    NOT NULL,
                    latency_ms     INTEGER NOT NULL,
                    success        INTEGER NOT NULL,
                    error_message  TEXT    NOT NULL,
                    prompt_chars   INTEGER NOT NULL,
                    response_chars INTEGER NOT NULL
                )
                """
            )
            self._connection.commit()

    def write(self, entry: ChatLogEntry) -> None:
        with self._lock:
            self._connection.execute(
                """
                INSERT INTO chat_requests (
                    timestamp,
                    identity,
                    model,
                    latency_ms,
                    success,
                    error_message,
                    prompt_chars,
                    response_chars
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.timestamp,
                    entry.identity,
                    entry.model,
                    entry.latency_ms,
                    1 if entry.success else 0,
                    entry.error_message,
                    entry.prompt_chars,
                    entry.response_chars,
                ),
            )
            self._connection.commit()

    def read_recent(self, limit: int) -> list[ChatLogEntry]:
        if limit <= 0:
            return []
        with self._lock:
            rows = self._connection.execute(
                """
                SELECT timestamp, identity, model, latency_ms, success, error_message,
                       prompt_chars, response_chars
                FROM chat_requests ORDER BY id DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            ChatLogEntry(
                timestamp=row["timestamp"],
                identity=row["identity"],
                model=row["model"],
                latency_ms=row["latency_ms"],
                success=row["success"] == 1,
                error_message=row["error_message"],
                prompt_chars=row["prompt_chars"],
                response_chars=row["response_chars"],
            )
            for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            self._connection.close()


def open_log_sink(logs_dir: Path, schema: dict[str, Any] | None = None) -> LogSink:
    """Open the structured store, or the line store if SQLite is unusable."""
    try:
        sink: LogSink = SQLiteLogSink(logs_dir / SQLITE_FILENAME)
    except (sqlite3.Error, OSError) as exc:
        logger.warning("SQLite unavailable, falling back to NDJSON: %s", exc)
        return JsonlLogSink(path=logs_dir / NDJSON_FILENAME, schema=schema)
    logger.info("SQLite request log ready: %s", sink.path)
    return sink
