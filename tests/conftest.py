"""Shared fixtures: a fake whatwatt device behind httpx.MockTransport and callback recorders."""

import asyncio
import json
from dataclasses import dataclass, field

import httpx
import pytest
import pytest_asyncio

from whatwatt_live.client.event_stream import EventStreamManager
from whatwatt_live.shared.models import ConnectionConfig

BASE_CONFIG = {
    "host": "device.local",
    "reconnect_delay": 0.01,
    "heartbeat_interval": 60.0,
}


def live_frame(payload: dict) -> str:
    """Encode one `live` SSE frame the way the device sends it."""
    return f"event: live\ndata: {json.dumps(payload, separators=(',', ':'))}\n\n"


@dataclass
class Session:
    """What the device does for one GET /api/v1/live."""

    chunks: tuple = ()
    status: int = 200
    error: Exception | None = None
    hold_open: bool = True


@dataclass
class FakeDevice:
    """MockTransport handler emulating the probe and live endpoints.

    Each live request consumes the next Session; the last one repeats.
    """

    sessions: list = field(default_factory=lambda: [Session()])
    probe_status: int = 200
    challenge: str | None = None
    digest: bool = False
    requests: list = field(default_factory=list)
    open_streams: int = 0

    @property
    def live_requests(self) -> list:
        return [r for r in self.requests if r.url.path == "/api/v1/live"]

    @property
    def probe_requests(self) -> list:
        return [r for r in self.requests if r.url.path == "/api/v1/system"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.path == "/api/v1/system":
            headers = {"WWW-Authenticate": self.challenge} if self.challenge else {}
            return httpx.Response(self.probe_status, headers=headers, json={})

        if self.digest and not request.headers.get("Authorization", "").startswith("Digest "):
            return httpx.Response(
                401, headers={"WWW-Authenticate": 'Digest realm="whatwatt", nonce="4f2a9c", qop="auth"'}
            )

        index = min(len(self.live_requests) - 1, len(self.sessions) - 1)
        session = self.sessions[index]
        if session.error is not None:
            raise session.error
        if session.status != 200:
            return httpx.Response(session.status)
        return httpx.Response(
            200, headers={"Content-Type": "text/event-stream"}, content=self._body(session)
        )

    async def _body(self, session: Session):
        self.open_streams += 1
        try:
            for chunk in session.chunks:
                yield chunk if isinstance(chunk, bytes) else chunk.encode("utf-8")
            if session.hold_open:
                await asyncio.Event().wait()
        finally:
            self.open_streams -= 1


class Recorder:
    """Collects everything the manager reports."""

    def __init__(self):
        self.data = []
        self.errors = []
        self.give_ups = []
        self.logs = []
        self.connects = 0
        self.disconnects = 0

    def on_connect(self):
        self.connects += 1

    def on_disconnect(self):
        self.disconnects += 1

    def callbacks(self) -> dict:
        return {
            "on_data": self.data.append,
            "on_connect": self.on_connect,
            "on_error": self.errors.append,
            "on_disconnect": self.on_disconnect,
            "on_give_up": self.give_ups.append,
            "logger": self.logs.append,
        }


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def eventually():
    """Poll a predicate until it holds or fail after `timeout` seconds."""

    async def _eventually(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                pytest.fail("condition not met in time")
            await asyncio.sleep(0.005)

    return _eventually


@pytest_asyncio.fixture
async def make_manager(recorder):
    managers = []

    def _make(device: FakeDevice, **overrides) -> EventStreamManager:
        config = ConnectionConfig(**{**BASE_CONFIG, **overrides})
        manager = EventStreamManager(config, transport=httpx.MockTransport(device), **recorder.callbacks())
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        await manager.stop()
