"""Shared fixtures: scripted broker transport, settings in tmp_path, fake clock."""

import json

import httpx
import pytest

from fresh_auth.broker import BrokerClient
from fresh_auth.config import Settings

BASE_URL = "https://broker.test"


class FakeBroker:
    """Scripted HTTP backend for httpx.MockTransport.

    Responses are queued per (method, path); the last queued response repeats.
    A path ending in '*' matches by prefix. Unmatched requests get a 404.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list[tuple]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method, path, status=200, json_body=None, text=None, headers=None):
        self.routes.setdefault((method, path), []).append((status, json_body, text, headers))
        return self

    def _match(self, method, path):
        if (method, path) in self.routes:
            return self.routes[(method, path)]
        for (m, p), queue in self.routes.items():
            if m == method and p.endswith("*") and path.startswith(p[:-1]):
                return queue
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._match(request.method, request.url.path)
        if not queue:
            return httpx.Response(404, json={"error": "not_found"})
        status, json_body, text, headers = queue.pop(0) if len(queue) > 1 else queue[0]
        if json_body is not None:
            return httpx.Response(status, json=json_body, headers=headers)
        return httpx.Response(status, text=text or "", headers=headers)

    def paths(self, method=None):
        return [r.url.path for r in self.requests if method is None or r.method == method]

    def bodies(self, method, path):
        return [
            json.loads(r.content) for r in self.requests
            if r.method == method and r.url.path == path and r.content
        ]


class FakeClock:
    """Wall clock that only moves when the code under test sleeps."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start
        self.sleeps = []

    def time(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake():
    return FakeBroker()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides):
        values = {
            "auth_service_url": BASE_URL,
            "agent_session_file": tmp_path / "fresh-auth" / "agent-session",
            "legacy_session_files": [tmp_path / "office-cli" / "agent-session"],
            "auto_request": True,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def make_broker(fake, settings):
    def _make(session="sess-123", settings=settings):
        broker = BrokerClient(
            settings,
            client=httpx.AsyncClient(transport=httpx.MockTransport(fake.handler)),
        )
        if session:
            broker.store.save(session)
        return broker
    return _make


@pytest.fixture
def broker(make_broker):
    return make_broker()
