from __future__ import annotations

import asyncio
import socket
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from call.media import (  # noqa: E402
    CallMode,
    IceCandidate,
    MediaEngine,
    MediaEvent,
    MediaEventSink,
    SessionDescription,
)
from config.settings import Settings  # noqa: E402
from signaling.transport import ConnectionClosed, TransportEvent, TransportListener  # noqa: E402


class FakeMediaEngine(MediaEngine):
    """Records every call; raises RuntimeError for operations named in ``fail_on``."""

    def __init__(
        self,
        name: str = "peer",
        *,
        fail_on: set[str] | None = None,
        local_description_delay: float = 0.0,
    ) -> None:
        self.name = name
        self.fail_on = fail_on or set()
        # Stands in for an engine that gathers candidates before completing.
        self.local_description_delay = local_description_delay
        self.calls: list[tuple[str, object]] = []
        self.sink: MediaEventSink | None = None
        self.local_description: SessionDescription | None = None
        self.remote_description: SessionDescription | None = None
        self.remote_candidates: list[IceCandidate] = []
        self.dispose_count = 0

    def bind(self, sink: MediaEventSink) -> None:
        self.sink = sink

    def emit(self, event: MediaEvent) -> None:
        assert self.sink is not None
        self.sink(event)

    def operations(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def _record(self, name: str, arg: object = None) -> None:
        self.calls.append((name, arg))
        if name in self.fail_on:
            raise RuntimeError(f"{name} refused by fake engine")

    async def prepare_local_media(self, mode: CallMode) -> None:
        await self._record("prepare_local_media", mode)

    async def create_offer(self) -> SessionDescription:
        await self._record("create_offer")
        return SessionDescription(type="offer", sdp=f"v=0 offer from {self.name}")

    async def create_answer(self) -> SessionDescription:
        await self._record("create_answer")
        return SessionDescription(type="answer", sdp=f"v=0 answer from {self.name}")

    async def apply_local_description(self, description: SessionDescription) -> None:
        await self._record("apply_local_description", description)
        if self.local_description_delay:
            await asyncio.sleep(self.local_description_delay)
        self.local_description = description

    async def apply_remote_description(self, description: SessionDescription) -> None:
        await self._record("apply_remote_description", description)
        self.remote_description = description

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        await self._record("add_remote_candidate", candidate)
        self.remote_candidates.append(candidate)

    async def mute(self) -> None:
        await self._record("mute")

    async def unmute(self) -> None:
        await self._record("unmute")

    async def dispose(self) -> None:
        self.dispose_count += 1
        await self._record("dispose")


class FakeTransport:
    """Stands in for SignalingTransport; tests push events with ``emit``."""

    def __init__(self) -> None:
        self.listener: TransportListener | None = None
        self.connected_to = None
        self.sent: list[str] = []
        self.disconnect_count = 0
        self.closed = False

    def set_listener(self, listener: TransportListener) -> None:
        self.listener = listener

    def connect(self, address) -> None:
        self.connected_to = address

    def send(self, text: str) -> None:
        if not self.closed:
            self.sent.append(text)

    def disconnect(self) -> None:
        self.disconnect_count += 1
        if self.closed:
            return
        self.closed = True
        if self.listener is not None:
            self.emit(ConnectionClosed())

    async def wait_closed(self) -> None:
        return None

    def emit(self, event: TransportEvent) -> None:
        assert self.listener is not None
        self.listener(event)


class EventRecorder:
    """Transport listener that also lets a test await a given event type."""

    def __init__(self) -> None:
        self.events: list[TransportEvent] = []
        self._queue: asyncio.Queue[TransportEvent] = asyncio.Queue()

    def __call__(self, event: TransportEvent) -> None:
        self.events.append(event)
        self._queue.put_nowait(event)

    async def next(self, kind: type, timeout: float = 5.0):
        while True:
            event = await asyncio.wait_for(self._queue.get(), timeout)
            if isinstance(event, kind):
                return event

    def count(self, kind: type) -> int:
        return sum(isinstance(event, kind) for event in self.events)


async def settle(rounds: int = 50) -> None:
    """Let queued tasks run; the fakes never block, so a few loop turns suffice."""

    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture()
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        connect_timeout=0.5,
        listen_host="127.0.0.1",
        stun_servers=[],
    )
