"""Shared test fixtures for Dockside."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable

import pytest

from dockside.errors import NotFoundError
from dockside.event_bus import EventBroker
from dockside.exec.manager import ExecSessionManager
from dockside.stream_codec import Channel, encode_frame
from dockside.types import ExecInspect, ExecSpec, ExecStartOptions, TerminalSize

# ---------------------------------------------------------------------------
# Shared helpers (plain classes/functions, importable by test files)
# ---------------------------------------------------------------------------


def frames(*parts: tuple[Channel, bytes]) -> bytes:
    """Concatenate encoded frames: ``frames((Channel.STDOUT, b"hi"), ...)``."""
    return b"".join(encode_frame(channel, payload) for channel, payload in parts)


class FakeStream:
    """In-memory DuplexStream. Chunks are queued; ``None`` marks end of stream."""

    def __init__(
        self,
        chunks: tuple[bytes, ...] | list[bytes] = (),
        *,
        eof: bool = True,
        error: BaseException | None = None,
    ) -> None:
        self._queue: asyncio.Queue[bytes | BaseException | None] = asyncio.Queue()
        for chunk in chunks:
            self._queue.put_nowait(chunk)
        if error is not None:
            self._queue.put_nowait(error)
        if eof:
            self._queue.put_nowait(None)
        self.written = bytearray()
        self._closed = False
        self._eof = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: bytes) -> None:
        self._queue.put_nowait(chunk)

    def feed_eof(self) -> None:
        self._queue.put_nowait(None)

    async def read(self, n: int = 65536) -> bytes:
        if self._closed or self._eof:
            return b""
        item = await self._queue.get()
        if item is None:
            self._eof = True
            return b""
        if isinstance(item, BaseException):
            raise item
        return item

    async def write(self, data: bytes) -> None:
        self.written += data

    async def close(self) -> None:
        self._closed = True
        self._queue.put_nowait(None)


class FakeEngineClient:
    """Scriptable EngineClient.

    ``respond(container_id, spec)`` builds the stream handed out by
    ``exec_start`` for that exec (it may raise to fail the create). Exit
    codes come from ``exit_codes`` keyed by exec id, else ``exit_code``.
    """

    def __init__(self) -> None:
        self.respond: Callable[[str, ExecSpec], FakeStream] = lambda cid, spec: FakeStream()
        self.exit_code = 0
        self.exit_codes: dict[str, int] = {}
        self.running: set[str] = set()
        self.missing_containers: set[str] = set()
        self.missing_execs: set[str] = set()
        self.container_info: dict = {"Config": {"Tty": False}}
        self.logs = b""
        self.stats: dict = {}
        self.events: list[dict] = []
        self.events_error: BaseException | None = None
        self.events_follow = True
        self.event_filters: list[dict | None] = []
        self.alive = True

        self.created: list[tuple[str, ExecSpec]] = []
        self.started: list[tuple[str, ExecStartOptions]] = []
        self.resized: list[tuple[str, TerminalSize]] = []
        self.streams: dict[str, FakeStream] = {}
        self.closed = False
        self._counter = 0

    async def exec_create(self, container_id: str, spec: ExecSpec) -> str:
        if container_id in self.missing_containers:
            raise NotFoundError("Container", container_id)
        self.created.append((container_id, spec))
        stream = self.respond(container_id, spec)
        self._counter += 1
        exec_id = f"exec-{self._counter}"
        self.streams[exec_id] = stream
        return exec_id

    async def exec_start(self, exec_id: str, options: ExecStartOptions) -> FakeStream:
        if exec_id in self.missing_execs:
            raise NotFoundError("Exec session", exec_id)
        self.started.append((exec_id, options))
        return self.streams[exec_id]

    async def exec_resize(self, exec_id: str, size: TerminalSize) -> None:
        if exec_id in self.missing_execs:
            raise NotFoundError("Exec session", exec_id)
        self.resized.append((exec_id, size))

    async def exec_inspect(self, exec_id: str) -> ExecInspect:
        if exec_id in self.missing_execs:
            raise NotFoundError("Exec session", exec_id)
        running = exec_id in self.running
        return ExecInspect(
            id=exec_id,
            running=running,
            exit_code=None if running else self.exit_codes.get(exec_id, self.exit_code),
        )

    async def container_inspect(self, container_id: str) -> dict:
        if container_id in self.missing_containers:
            raise NotFoundError("Container", container_id)
        return self.container_info

    async def container_logs(
        self, container_id: str, *, tail: int | None = None, timestamps: bool = False
    ) -> bytes:
        if container_id in self.missing_containers:
            raise NotFoundError("Container", container_id)
        return self.logs

    async def container_stats(self, container_id: str) -> dict:
        if container_id in self.missing_containers:
            raise NotFoundError("Container", container_id)
        return self.stats

    async def container_events(
        self,
        *,
        since: int | None = None,
        until: int | None = None,
        filters: dict | None = None,
    ) -> AsyncIterator[dict]:
        """Yield ``events`` once, then fail once with ``events_error`` or hang while following."""
        self.event_filters.append(filters)
        events, self.events = self.events, []
        for event in events:
            yield event
        error, self.events_error = self.events_error, None
        if error is not None:
            raise error
        if self.events_follow:
            await asyncio.Event().wait()

    async def ping(self) -> bool:
        return self.alive

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Each test starts with no cached Settings and no config from the environment."""
    monkeypatch.setattr("dockside.config._settings", None)
    monkeypatch.delenv("LOG_LEVEL", raising=False)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> FakeEngineClient:
    return FakeEngineClient()


@pytest.fixture
def broker() -> EventBroker:
    return EventBroker()


@pytest.fixture
def manager(engine: FakeEngineClient, broker: EventBroker) -> ExecSessionManager:
    return ExecSessionManager(engine, broker, probe_timeout=0.2)
