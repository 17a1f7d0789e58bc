import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from typing import Any

SCHEMA_FILENAME = "chat-log-entry.schema.json"


@dataclass(frozen=True)
class ChatLogEntry:
    """One completed chat request. Immutable once created."""

    timestamp: str
    identity: str
    model: str
    latency_ms: int
    success: bool
    error_message: str
    prompt_chars: int
    response_chars: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ChatLogEntry":
        return cls(
            timestamp=str(payload["timestamp"]),
            identity=str(payload["identity"]),
            model=str(payload["model"]),
            latency_ms=int(payload["latency_ms"]),
            success=bool(payload["success"]),
            error_message=str(payload["error_message"]),
            prompt_chars=int(payload["prompt_chars"]),
            response_chars=int(payload["response_chars"]),
        )


def utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


@lru_cache
def load_entry_schema(contracts_dir: Path) -> dict[str, Any]:
    schema_path = contracts_dir / SCHEMA_FILENAME
    schema: dict[str, Any] = json.loads(schema_path.read_text(encoding="utf-8"))
    return schema
