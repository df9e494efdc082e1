# keyproxy/conftest.py
import json
from pathlib import Path
from typing import Callable

import httpx
import pytest

from config import Settings
from main import create_app
from upstream import UpstreamClient

UPSTREAM_KEY = "sk-upstream-secret"
UPSTREAM_BASE = "http://upstream.test"
GOOD_KEY = "vk-alice-123456"


class ChunkStream(httpx.AsyncByteStream):
    """Upstream body delivered in fixed chunks, optionally failing at the end."""

    def __init__(self, chunks: list[bytes], error: Exception | None = None) -> None:
        self.chunks = chunks
        self.error = error

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


class FakeUpstream:
    """Records every upstream request and answers with a canned response."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response] | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.respond = respond or (lambda request: httpx.Response(200, json={"ok": True}))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    def client(self, timeout: float = 600.0) -> UpstreamClient:
        return UpstreamClient(
            UPSTREAM_BASE, UPSTREAM_KEY, timeout, transport=httpx.MockTransport(self.handler)
        )


def read_log(path: Path) -> list[dict]:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.fixture
def keys_file(tmp_path) -> Path:
    path = tmp_path / "allowed_api_keys.txt"
    path.write_text(f"# team keys\n{GOOD_KEY}\n\nvk-bob-654321\n")
    return path


@pytest.fixture
def log_file(tmp_path) -> Path:
    return tmp_path / "logs" / "logs.jsonl"


@pytest.fixture
def settings(keys_file, log_file) -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key=UPSTREAM_KEY,
        openai_base_url=UPSTREAM_BASE,
        allowed_keys_file=str(keys_file),
        log_file=str(log_file),
    )


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
async def app(settings, fake_upstream):
    application = create_app(settings)
    await application.state.upstream.aclose()
    application.state.upstream = fake_upstream.client()
    yield application
    await application.state.upstream.aclose()


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
        headers={"authorization": f"Bearer {GOOD_KEY}"},
    ) as c:
        yield c


@pytest.fixture
async def anon_client(app):
    """Client without an Authorization header."""
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c
