"""Tests for ExecSessionManager lifecycle and bookkeeping."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from conftest import FakeEngineClient, FakeStream, frames

from dockside.config import EngineConfig
from dockside.engine import DockerEngineClient
from dockside.errors import (
    EngineIOError,
    EngineTimeoutError,
    NotFoundError,
    StreamError,
    ValidationError,
)
from dockside.event_bus import ErrorEvent, EventBroker, ExecEvent, ExecOutputEvent
from dockside.exec.manager import ExecSessionManager
from dockside.retry import RetryPolicy
from dockside.stream_codec import Channel
from dockside.types import ExecSpec, ExecStartOptions, ExecState


def _actions(broker: EventBroker, container: str = "c1") -> list[str]:
    return [e.action for e in broker.get_buffered_events(container, ExecEvent)]


class TestCreateStart:
    async def test_create_tracks_session(
        self, manager: ExecSessionManager, engine: FakeEngineClient, broker: EventBroker
    ) -> None:
        exec_id = await manager.create("c1", ExecSpec(cmd=["ls", "-la"]))

        session = manager.get_session(exec_id)
        assert session is not None
        assert session.state is ExecState.CREATED
        assert session.command == ["ls", "-la"]
        assert engine.created[0][0] == "c1"
        assert _actions(broker) == ["created"]

    async def test_create_unknown_container(
        self, manager: ExecSessionManager, engine: FakeEngineClient
    ) -> None:
        engine.missing_containers.add("ghost")

        with pytest.raises(NotFoundError) as exc_info:
            await manager.create("ghost", ExecSpec(cmd=["true"]))

        assert exc_info.value.resource == "Container"
        assert exc_info.value.identifier == "ghost"
        assert manager.get_active_sessions() == []

    def test_empty_command_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ExecSpec(cmd=[])

    async def test_start_transitions_and_uses_session_tty(
        self, manager: ExecSessionManager, engine: FakeEngineClient, broker: EventBroker
    ) -> None:
        exec_id = await manager.create("c1", ExecSpec(cmd=["top"], tty=True))

        await manager.start(exec_id)

        session = manager.get_session(exec_id)
        assert session.state is ExecState.STARTED
        assert session.started is not None
        assert engine.started == [(exec_id, ExecStartOptions(tty=True))]
        assert _actions(broker) == ["created", "started"]

    async def test_start_unknown_exec(
        self, manager: ExecSessionManager, engine: FakeEngineClient
    ) -> None:
        engine.missing_execs.add("nope")

        with pytest.raises(NotFoundError) as exc_info:
            await manager.start("nope")

        assert exc_info.value.resource == "Exec session"


class TestCommand:
    async def test_collects_demultiplexed_output(
        self, manager: ExecSessionManager, engine: FakeEngineClient, broker: EventBroker
    ) -> None:
        payload = frames((Channel.STDOUT, b"hello\n"), (Channel.STDERR, b"warn\n"))
        # split mid-header to exercise partial frames
        engine.respond = lambda cid, spec: FakeStream([payload[:3], payload[3:]])

        result = await manager.command("c1", ["echo", "hello"])

        assert result.stdout == "hello"
        assert result.stderr == "warn"
        assert result.exit_code == 0
        assert result.ok
        session = manager.get_sessions_by_container("c1")[0]
        assert session.state is ExecState.EXITED
        assert session.exit_code == 0
        assert _actions(broker) == ["created", "started", "running", "ended"]
        outputs = broker.get_buffered_events("c1", ExecOutputEvent)
        assert [(o.channel, o.data) for o in outputs] == [
            (Channel.STDOUT, b"hello\n"),
            (Channel.STDERR, b"warn\n"),
        ]

    async def test_non_zero_exit_code(
        self, manager: ExecSessionManager, engine: FakeEngineClient
    ) -> None:
        engine.exit_code = 2
        engine.respond = lambda cid, spec: FakeStream([frames((Channel.STDERR, b"no such file"))])

        result = await manager.command("c1", ["cat", "/missing"])

        assert result.exit_code == 2
        assert not result.ok
        assert result.stderr == "no such file"

    async def test_trailing_bytes_are_ignored(
        self, manager: ExecSessionManager, engine: FakeEngineClient
    ) -> None:
        engine.respond = lambda cid, spec: FakeStream([frames((Channel.STDOUT, b"ok")) + b"\x01"])

        result = await manager.command("c1", ["true"])

        assert result.stdout == "ok"

    async def test_no_stdin_attached(
        self, manager: ExecSessionManager, engine: FakeEngineClient
    ) -> None:
        await manager.command("c1", ["true"], user="app", working_dir="/srv", env=["A=1"])

        spec = engine.created[0][1]
        assert spec.attach_stdin is False
        assert spec.tty is False
        assert (spec.user, spec.working_dir, spec.env) == ("app", "/srv", ["A=1"])

    async def test_engine_failure_marks_stopped_and_propagates(
        self, manager: ExecSessionManager, engine: FakeEngineClient, broker: EventBroker
    ) -> None:
        engine.respond = lambda cid, spec: FakeStream(
            [frames((Channel.STDOUT, b"partial"))], error=EngineIOError("connection dropped")
        )

        with pytest.raises(EngineIOError):
            await manager.command("c1", ["long-job"])

        session = manager.get_sessions_by_container("c1")[0]
        assert session.state is ExecState.STOPPED
        assert _actions(broker)[-1] == "stopped"
        assert engine.streams[session.id].closed


class TestInteractive:
    async def test_explicit_command_skips_detection(
        self, manager: ExecSessionManager, engine: FakeEngineClient
    ) -> None:
        engine.respond = lambda cid, spec: FakeStream(eof=False)

        session = await manager.interactive("c1", ["/bin/zsh"])

        assert len(engine.created) == 1
        spec = engine.created[0][1]
        assert spec.cmd == ["/bin/zsh"]
        assert spec.tty and spec.attach_stdin and spec.attach_stdout and spec.attach_stderr
        assert engine.started[0][1] == ExecStartOptions(tty=True)
        assert session.exec_id == "exec-1"

    async def test_detects_shell_when_no_command(
        self, manager: ExecSessionManager, engine: FakeEngineClient
    ) -> None:
        def respond(cid: str, spec: ExecSpec) -> FakeStream:
            if spec.cmd[0] == "/bin/bash":
                return FakeStream()
            if spec.tty:
                return FakeStream(eof=False)
            return FakeStream([frames((Channel.STDOUT, b"test\n"))])

        engine.respond = respond

        session = await manager.interactive("c1")

        assert engine.created[-1][1].cmd == ["/bin/sh"]
        # probes are never tracked as sessions
        assert [s.command for s in manager.get_active_sessions()] == [["/bin/sh"]]
        assert manager.get_session(session.exec_id).tty is True

    async def test_stream_drives_lifecycle(
        self, manager: ExecSessionManager, engine: FakeEngineClient, broker: EventBroker
    ) -> None:
        engine.exit_code = 130
        engine.respond = lambda cid, spec: FakeStream([b"$ ", b"exit\r\n"])

        session = await manager.interactive("c1", ["/bin/sh"])
        chunks = [chunk async for chunk in session.stream]

        assert chunks == [b"$ ", b"exit\r\n"]
        record = manager.get_session(session.exec_id)
        assert record.state is ExecState.EXITED
        assert record.exit_code == 130
        assert _actions(broker) == ["created", "started", "running", "ended"]
        assert await session.stream.read() == b""

    async def test_write_resize_and_kill(
        self, manager: ExecSessionManager, engine: FakeEngineClient, broker: EventBroker
    ) -> None:
        engine.respond = lambda cid, spec: FakeStream(eof=False)
        session = await manager.interactive("c1", ["/bin/sh"])

        await session.stream.write(b"ls\n")
        await session.resize(40, 120)
        await session.kill()

        raw = engine.streams[session.exec_id]
        assert bytes(raw.written) == b"ls\n"
        assert engine.resized[0][1].height == 40
        assert engine.resized[0][1].width == 120
        assert raw.closed
        assert manager.get_session(session.exec_id).state is ExecState.STOPPED
        assert _actions(broker)[-1] == "stopped"

    async def test_transport_error_marks_stopped(
        self, manager: ExecSessionManager, engine: FakeEngineClient, broker: EventBroker
    ) -> None:
        engine.respond = lambda cid, spec: FakeStream([b"hi"], error=ConnectionResetError("reset"))
        session = await manager.interactive("c1", ["/bin/sh"])

        assert await session.stream.read() == b"hi"
        with pytest.raises(StreamError):
            await session.stream.read()

        assert manager.get_session(session.exec_id).state is ExecState.STOPPED
        assert broker.get_buffered_events("c1", ErrorEvent)
        with pytest.raises(StreamError):
            await session.stream.write(b"x")

    async def test_start_failure_stops_session(
        self, manager: ExecSessionManager, engine: FakeEngineClient
    ) -> None:
        original = engine.exec_start

        async def failing_start(exec_id, options):
            raise EngineIOError("upgrade refused")

        engine.exec_start = failing_start
        with pytest.raises(EngineIOError):
            await manager.interactive("c1", ["/bin/sh"])
        engine.exec_start = original

        assert manager.get_active_sessions()[0].state is ExecState.STOPPED


class TestStateMachine:
    async def test_stop_is_idempotent_and_terminal(
        self, manager: ExecSessionManager, broker: EventBroker
    ) -> None:
        exec_id = await manager.create("c1", ExecSpec(cmd=["sleep", "10"]))
        await manager.start(exec_id)

        await manager.stop(exec_id)
        await manager.stop(exec_id)
        await manager.stop("unknown")

        session = manager.get_session(exec_id)
        assert session.state is ExecState.STOPPED
        assert session.finished is not None
        assert _actions(broker).count("stopped") == 1

    async def test_terminal_state_never_moves(self, manager: ExecSessionManager) -> None:
        exec_id = await manager.create("c1", ExecSpec(cmd=["true"]))
        session = manager.get_session(exec_id)

        assert session.transition(ExecState.EXITED) is False
        assert session.transition(ExecState.STARTED) is True
        assert session.transition(ExecState.EXITED, exit_code=0) is True
        for state in ExecState:
            assert session.transition(state) is False
        assert session.state is ExecState.EXITED

    async def test_resize_validates_size(self, manager: ExecSessionManager) -> None:
        with pytest.raises(ValidationError):
            await manager.resize("exec-1", 0, 80)

    async def test_inspect_unknown_exec(
        self, manager: ExecSessionManager, engine: FakeEngineClient
    ) -> None:
        engine.missing_execs.add("gone")
        with pytest.raises(NotFoundError) as exc_info:
            await manager.inspect("gone")
        assert exc_info.value.identifier == "gone"


class TestBookkeeping:
    async def test_sessions_by_container(self, manager: ExecSessionManager) -> None:
        await manager.create("c1", ExecSpec(cmd=["a"]))
        await manager.create("c2", ExecSpec(cmd=["b"]))
        await manager.create("c1", ExecSpec(cmd=["c"]))

        assert len(manager.get_active_sessions()) == 3
        assert [s.command for s in manager.get_sessions_by_container("c1")] == [["a"], ["c"]]
        assert manager.get_sessions_by_container("c3") == []

    async def test_cleanup_evicts_forgotten_and_finishes_exited(
        self, manager: ExecSessionManager, engine: FakeEngineClient
    ) -> None:
        gone = await manager.create("c1", ExecSpec(cmd=["a"]))
        done = await manager.create("c1", ExecSpec(cmd=["b"]))
        live = await manager.create("c1", ExecSpec(cmd=["c"]))
        await manager.start(done)
        await manager.start(live)
        engine.missing_execs.add(gone)
        engine.running.add(live)
        engine.exit_codes[done] = 3

        evicted = await manager.cleanup_sessions()

        assert evicted == [gone]
        assert manager.get_session(gone) is None
        assert manager.get_session(done).state is ExecState.EXITED
        assert manager.get_session(done).exit_code == 3
        assert manager.get_session(live).state is ExecState.STARTED

    async def test_cleanup_keeps_record_on_transport_error(
        self, manager: ExecSessionManager, engine: FakeEngineClient
    ) -> None:
        exec_id = await manager.create("c1", ExecSpec(cmd=["a"]))

        async def broken_inspect(exec_id):
            raise EngineIOError("engine unreachable")

        engine.exec_inspect = broken_inspect

        assert await manager.cleanup_sessions() == []
        assert manager.get_session(exec_id) is not None

    async def test_close_stops_live_sessions(self, manager: ExecSessionManager) -> None:
        a = await manager.create("c1", ExecSpec(cmd=["a"]))
        b = await manager.create("c1", ExecSpec(cmd=["b"]))
        await manager.start(b)

        await manager.close()

        assert manager.get_session(a).state is ExecState.STOPPED
        assert manager.get_session(b).state is ExecState.STOPPED


class SlowInspectEngine(DockerEngineClient):
    """Real REST client whose exec start hands back an in-memory TTY stream."""

    def __init__(self, port: int) -> None:
        super().__init__(
            EngineConfig(host=f"tcp://127.0.0.1:{port}", timeout=0.2), RetryPolicy(retries=0)
        )
        self.stream = FakeStream([b"$ "])

    async def exec_start(self, exec_id: str, options: ExecStartOptions) -> FakeStream:
        return self.stream


@pytest.fixture
async def slow_engine() -> AsyncIterator[SlowInspectEngine]:
    async def create_exec(request: web.Request) -> web.Response:
        return web.json_response({"Id": "exec-slow"}, status=201)

    async def hang(request: web.Request) -> web.Response:
        await asyncio.sleep(1)
        return web.json_response({"Running": False, "ExitCode": 0})

    app = web.Application()
    app.router.add_post("/containers/{cid}/exec", create_exec)
    app.router.add_get("/exec/{eid}/json", hang)
    server = TestServer(app)
    await server.start_server()
    client = SlowInspectEngine(server.port)
    yield client
    await client.close()
    await server.close()


class TestSlowEngine:
    """A hung engine call is an engine error, never a stuck session."""

    async def test_cleanup_survives_inspect_timeout(
        self, slow_engine: SlowInspectEngine, broker: EventBroker
    ) -> None:
        manager = ExecSessionManager(slow_engine, broker)
        exec_id = await manager.create("c1", ExecSpec(cmd=["sleep", "60"]))

        assert await manager.cleanup_sessions() == []
        assert manager.get_session(exec_id).state is ExecState.CREATED

    async def test_eof_finishes_session_when_exit_code_is_unavailable(
        self, slow_engine: SlowInspectEngine, broker: EventBroker
    ) -> None:
        manager = ExecSessionManager(slow_engine, broker)
        session = await manager.interactive("c1", ["/bin/sh"])

        chunks = [chunk async for chunk in session.stream]

        assert chunks == [b"$ "]
        record = manager.get_session(session.exec_id)
        assert record.state is ExecState.EXITED
        assert record.exit_code is None
        assert _actions(broker)[-1] == "ended"

    async def test_inspect_timeout_is_engine_timeout(
        self, slow_engine: SlowInspectEngine, broker: EventBroker
    ) -> None:
        manager = ExecSessionManager(slow_engine, broker)

        with pytest.raises(EngineTimeoutError):
            await manager.inspect("exec-slow")
