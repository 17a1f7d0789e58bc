from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from chatproxy.auth.session import SessionIdentity
from chatproxy.config.settings import clear_settings_cache
from chatproxy.main import create_app

GATEWAY_URL = "http://gateway.test"
GATEWAY_TOKEN = "gw-secret-token-123"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "correct-horse-battery"
CHAT_PATH = "/v1/chat/completions"

Handler = Callable[[httpx.Request], httpx.Response]


class ChunkStream(httpx.AsyncByteStream):
    def __init__(self, chunks: list[bytes]):
        self._chunks = chunks

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk


def completion_payload(content: str | None = "Hello there!") -> dict[str, object]:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gateway:main",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 3, "completion_tokens": 3, "total_tokens": 6},
    }


class FakeGateway:
    """In-process upstream; routes are keyed by URL path."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, Handler] = {
            CHAT_PATH: lambda _: httpx.Response(200, json=completion_payload()),
            "/health": lambda _: httpx.Response(200, json={"status": "ok"}),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, text="Not Found")
        return route(request)

    def on(self, path: str, route: Handler) -> None:
        self.routes[path] = route

    def stream_chunks(self, chunks: list[bytes], status_code: int = 200) -> None:
        self.on(
            CHAT_PATH,
            lambda _: httpx.Response(
                status_code,
                headers={"content-type": "text/event-stream"},
                stream=ChunkStream(list(chunks)),
            ),
        )

    @staticmethod
    def completion(content: str | None = "Hello there!") -> dict[str, object]:
        return completion_payload(content)

    @property
    def chat_calls(self) -> int:
        return sum(1 for request in self.requests if request.url.path == CHAT_PATH)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def app_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Path]:
    logs_dir = tmp_path / "logs"
    monkeypatch.setenv("CHATPROXY_ENV", "test")
    monkeypatch.setenv("CHATPROXY_LOGS_DIR", str(logs_dir))
    monkeypatch.setenv("CHATPROXY_GATEWAY_URL", GATEWAY_URL)
    monkeypatch.setenv("CHATPROXY_GATEWAY_TOKEN", GATEWAY_TOKEN)
    monkeypatch.setenv("CHATPROXY_SESSION_SECRET", "s" * 48)
    monkeypatch.setenv("CHATPROXY_ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setenv("CHATPROXY_ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.delenv("CHATPROXY_CHAT_MODE", raising=False)
    clear_settings_cache()
    yield logs_dir
    clear_settings_cache()


@pytest.fixture
def client(app_env: Path, fake_gateway: FakeGateway) -> Iterator[TestClient]:
    app = create_app(gateway_transport=httpx.MockTransport(fake_gateway.handler))
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(client: TestClient) -> dict[str, str]:
    token = client.app.state.session_manager.issue(
        SessionIdentity(email=ADMIN_EMAIL, is_admin=True)
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def chat_body() -> dict[str, object]:
    return {
        "model": "gateway:main",
        "messages": [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi!"},
        ],
    }
