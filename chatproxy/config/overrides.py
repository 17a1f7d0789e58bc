"""Persisted gateway setting overrides.

Operators can change the upstream URL, token, chat path, chat mode and default
model at runtime.  Overrides live in a small SQLite key/value table next to the
request log and are merged over the environment defaults on every read, so a
change is picked up by the next request without a restart.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from chatproxy.config.settings import Settings

logger = logging.getLogger("chatproxy.settings")

CHAT_MODES = ("enabled", "disabled")
TOKEN_MASK = "***configured***"
OVERRIDE_KEYS = ("gateway_url", "gateway_token", "chat_path", "chat_mode", "default_model")


@dataclass(frozen=True)
class GatewaySettings:
    gateway_url: str
    gateway_token: str
    chat_path: str
    chat_mode: str
    default_model: str

    @property
    def chat_enabled(self) -> bool:
        return self.chat_mode != "disabled"

    def masked(self) -> dict[str, str]:
        payload = asdict(self)
        payload["gateway_token"] = TOKEN_MASK if self.gateway_token else ""
        return payload


def _normalize_chat_mode(raw: str) -> str:
    value = raw.strip().lower()
    return value if value in CHAT_MODES else "enabled"


class GatewaySettingsStore:
    def __init__(self, settings: Settings, db_path: Path | None = None):
        self._settings = settings
        self._db_path = db_path or settings.logs_dir / "requests.db"
        self._lock = threading.Lock()
        self._opened = False
        self._available = False

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self._db_path))
        connection.row_factory = sqlite3.Row
        return connection

    def _ensure_open(self) -> bool:
        with self._lock:
            if self._opened:
                return self._available
            self._opened = True
            try:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                with self._connect() as connection:
                    connection.execute("PRAGMA journal_mode=WAL")
                    connection.execute(
                        """
                        CREATE TABLE IF NOT EXISTS settings (
                            key   TEXT PRIMARY KEY,
                            value TEXT NOT NULL
                        )
                        """
                    )
                    connection.commit()
            except (sqlite3.Error, OSError) as exc:
                logger.warning("settings store unavailable, using environment defaults: %s", exc)
                self._available = False
            else:
                self._available = True
            return self._available

    def defaults(self) -> GatewaySettings:
        return GatewaySettings(
            gateway_url=self._settings.gateway_url.rstrip("/"),
            gateway_token=self._settings.gateway_token,
            chat_path=self._settings.chat_path,
            chat_mode=_normalize_chat_mode(self._settings.chat_mode),
            default_model=self._settings.default_model,
        )

    def overrides(self) -> dict[str, str]:
        if not self._ensure_open():
            return {}
        try:
            with self._connect() as connection:
                rows = connection.execute("SELECT key, value FROM settings").fetchall()
        except sqlite3.Error as exc:
            logger.error("settings read failed: %s", exc)
            return {}
        return {row["key"]: row["value"] for row in rows if row["key"] in OVERRIDE_KEYS}

    def get(self) -> GatewaySettings:
        merged = asdict(self.defaults())
        for key, value in self.overrides().items():
            if value:
                merged[key] = value
        merged["chat_mode"] = _normalize_chat_mode(merged["chat_mode"])
        return GatewaySettings(**merged)

    def save(self, patch: dict[str, str]) -> None:
        if not patch:
            return
        if not self._ensure_open():
            logger.warning("settings store unavailable, patch not persisted: %s", sorted(patch))
            return
        with self._connect() as connection:
            connection.executemany(
                """
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                [(key, str(value)) for key, value in patch.items()],
            )
            connection.commit()
        logger.info("settings updated: %s", ", ".join(sorted(patch)))


def validate_settings_patch(patch: dict[str, Any]) -> tuple[dict[str, str], list[str]]:
    """Clean a settings patch.

    Returns ``(clean, errors)``; callers must reject the patch when ``errors``
    is non-empty.  Unknown keys are ignored.  A token equal to the mask string
    means "unchanged" and is dropped.
    """
    errors: list[str] = []
    clean: dict[str, str] = {}

    for key in OVERRIDE_KEYS:
        if key not in patch or patch[key] is None:
            continue
        raw = str(patch[key]).strip()

        if key == "gateway_token":
            if raw != TOKEN_MASK:
                clean[key] = raw
        elif key == "chat_mode":
            if raw not in CHAT_MODES:
                errors.append(f'chat_mode must be "enabled" or "disabled" (got "{raw}")')
            else:
                clean[key] = raw
        elif key == "gateway_url":
            if not raw:
                clean[key] = ""
                continue
            parsed = urlparse(raw)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                errors.append(f'gateway_url must be an http:// or https:// URL (got "{raw}")')
            else:
                clean[key] = raw.rstrip("/")
        elif key == "chat_path":
            clean[key] = raw if not raw or raw.startswith("/") else f"/{raw}"
        elif key == "default_model":
            if not raw:
                errors.append("default_model must not be empty")
            else:
                clean[key] = raw

    return clean, errors
