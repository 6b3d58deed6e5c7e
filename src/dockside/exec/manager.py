"""Exec session lifecycle: create, start, resize and retire sessions.

The manager owns its session table; nothing else mutates the records. State
moves only forward (see ExecSession.transition) and every change is published
to the EventBroker as an ExecEvent.

``stop()`` is bookkeeping only. The engine has no primitive to kill an exec
instance, so stopping a session does not terminate the remote process.
Callers that need that must send input that makes it exit, or stop the
container.
"""

from __future__ import annotations

from collections.abc import Sequence

from dockside.engine.client import DuplexStream, EngineClient
from dockside.errors import EngineError, NotFoundError
from dockside.event_bus import ErrorEvent, EventBroker, ExecEvent, ExecOutputEvent
from dockside.exec._session_stream import SessionStream
from dockside.exec.shell import DEFAULT_SHELLS, probe_shells
from dockside.logger import logger
from dockside.stream_codec import Channel, FrameDecoder
from dockside.types import (
    ExecInspect,
    ExecResult,
    ExecSession,
    ExecSpec,
    ExecStartOptions,
    ExecState,
    InteractiveSession,
    TerminalSize,
)


class ExecSessionManager:
    def __init__(
        self,
        engine: EngineClient,
        broker: EventBroker,
        *,
        shell_candidates: Sequence[str] = DEFAULT_SHELLS,
        probe_timeout: float = 1.0,
        probe_marker: str = "test",
    ) -> None:
        self.engine = engine
        self.broker = broker
        self.shell_candidates = tuple(shell_candidates)
        self.probe_timeout = probe_timeout
        self.probe_marker = probe_marker
        self._sessions: dict[str, ExecSession] = {}

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def create(self, container_id: str, spec: ExecSpec) -> str:
        """Register an exec instance with the engine and start tracking it."""
        try:
            exec_id = await self.engine.exec_create(container_id, spec)
        except NotFoundError as exc:
            raise NotFoundError("Container", container_id) from exc

        self._sessions[exec_id] = ExecSession(
            id=exec_id, container_id=container_id, command=list(spec.cmd), tty=spec.tty
        )
        self.broker.publish(
            ExecEvent(
                action="created",
                exec_id=exec_id,
                container_id=container_id,
                command=list(spec.cmd),
            )
        )
        logger.info(
            "Exec session created", exec_id=exec_id, container=container_id, cmd=" ".join(spec.cmd)
        )
        return exec_id

    async def start(self, exec_id: str, options: ExecStartOptions | None = None) -> DuplexStream:
        """Start the exec instance and return its raw duplex stream.

        Non-TTY streams are multiplexed; route them through FrameDecoder.
        TTY streams are raw terminal bytes.
        """
        session = self._sessions.get(exec_id)
        if options is None:
            options = ExecStartOptions(tty=session.tty if session else False)
        try:
            stream = await self.engine.exec_start(exec_id, options)
        except NotFoundError as exc:
            raise NotFoundError("Exec session", exec_id) from exc

        if session is not None:
            session.transition(ExecState.STARTED)
        self.broker.publish(
            ExecEvent(
                action="started",
                exec_id=exec_id,
                container_id=session.container_id if session else None,
            )
        )
        logger.info("Exec session started", exec_id=exec_id)
        return stream

    async def interactive(
        self,
        container_id: str,
        cmd: list[str] | None = None,
        *,
        user: str | None = None,
        working_dir: str | None = None,
        env: list[str] | None = None,
    ) -> InteractiveSession:
        """Open a TTY session with stdin attached; the shell is detected if ``cmd`` is None."""
        if not cmd:
            cmd = [await self.find_shell(container_id)]

        exec_id = await self.create(
            container_id,
            ExecSpec(
                cmd=cmd,
                attach_stdin=True,
                attach_stdout=True,
                attach_stderr=True,
                tty=True,
                user=user,
                working_dir=working_dir,
                env=env,
            ),
        )
        try:
            raw = await self.start(exec_id, ExecStartOptions(tty=True))
        except (EngineError, OSError):
            await self.stop(exec_id)
            raise

        session = self._sessions[exec_id]

        async def resize(height: int, width: int) -> None:
            await self.resize(exec_id, height, width)

        async def kill() -> None:
            await self.stop(exec_id)
            await raw.close()

        return InteractiveSession(
            exec_id=exec_id,
            stream=SessionStream(self, session, raw),
            resize=resize,
            kill=kill,
        )

    async def resize(self, exec_id: str, height: int, width: int) -> None:
        size = TerminalSize(height=height, width=width)
        try:
            await self.engine.exec_resize(exec_id, size)
        except NotFoundError as exc:
            raise NotFoundError("Exec session", exec_id) from exc
        logger.debug("Exec session resized", exec_id=exec_id, width=width, height=height)

    async def inspect(self, exec_id: str) -> ExecInspect:
        try:
            return await self.engine.exec_inspect(exec_id)
        except NotFoundError as exc:
            raise NotFoundError("Exec session", exec_id) from exc

    async def command(
        self,
        container_id: str,
        cmd: list[str],
        *,
        user: str | None = None,
        working_dir: str | None = None,
        env: list[str] | None = None,
        privileged: bool = False,
    ) -> ExecResult:
        """Run ``cmd`` to completion and collect demultiplexed stdout/stderr.

        Engine failures propagate unchanged; there is no partial result.
        """
        exec_id = await self.create(
            container_id,
            ExecSpec(
                cmd=cmd,
                attach_stdout=True,
                attach_stderr=True,
                user=user,
                working_dir=working_dir,
                env=env,
                privileged=privileged,
            ),
        )
        session = self._sessions[exec_id]
        try:
            stream = await self.start(exec_id, ExecStartOptions())
            try:
                stdout, stderr = await self._collect(session, stream)
            finally:
                await stream.close()
            info = await self.inspect(exec_id)
        except BaseException:
            await self.stop(exec_id)
            raise

        exit_code = info.exit_code or 0
        self._finish(session, exit_code)
        return ExecResult(
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
            exit_code=exit_code,
        )

    async def stop(self, exec_id: str) -> None:
        """Mark a session stopped. Does NOT terminate the remote process."""
        session = self._sessions.get(exec_id)
        if session is None or not session.transition(ExecState.STOPPED):
            return
        self.broker.publish(
            ExecEvent(action="stopped", exec_id=exec_id, container_id=session.container_id)
        )
        logger.info("Exec session marked as stopped", exec_id=exec_id)

    async def find_shell(self, container_id: str) -> str:
        return await probe_shells(
            self.engine,
            container_id,
            self.shell_candidates,
            timeout=self.probe_timeout,
            marker=self.probe_marker,
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def get_session(self, exec_id: str) -> ExecSession | None:
        return self._sessions.get(exec_id)

    def get_active_sessions(self) -> list[ExecSession]:
        return list(self._sessions.values())

    def get_sessions_by_container(self, container_id: str) -> list[ExecSession]:
        return [s for s in self._sessions.values() if s.container_id == container_id]

    async def cleanup_sessions(self) -> list[str]:
        """Re-inspect every tracked session; evict the ones the engine forgot.

        Returns the evicted exec ids. Transport errors keep the record.
        """
        evicted: list[str] = []
        for exec_id, session in list(self._sessions.items()):
            try:
                info = await self.inspect(exec_id)
            except NotFoundError:
                del self._sessions[exec_id]
                evicted.append(exec_id)
                continue
            except (EngineError, OSError) as exc:
                logger.warning("Exec inspect failed during cleanup", exec_id=exec_id, err=str(exc))
                continue
            if not info.running and not session.terminal:
                self._finish(session, info.exit_code)
        logger.info("Cleaned up exec sessions", evicted=len(evicted), tracked=len(self._sessions))
        return evicted

    async def close(self) -> None:
        """Mark every live session stopped (bookkeeping only)."""
        for exec_id, session in list(self._sessions.items()):
            if not session.terminal:
                await self.stop(exec_id)

    # ------------------------------------------------------------------
    # Stream lifecycle hooks (driven by command() and SessionStream)
    # ------------------------------------------------------------------

    async def _collect(self, session: ExecSession, stream: DuplexStream) -> tuple[bytes, bytes]:
        decoder = FrameDecoder()
        stdout = bytearray()
        stderr = bytearray()
        while chunk := await stream.read():
            for frame in decoder.feed(chunk):
                if frame.channel is Channel.STDIN:
                    continue
                self._on_stream_data(session, frame.channel, frame.payload)
                if frame.channel is Channel.STDERR:
                    stderr += frame.payload
                else:
                    stdout += frame.payload
        leftover = decoder.flush()
        if leftover:
            logger.debug("Discarding trailing bytes", exec_id=session.id, size=len(leftover))
        return bytes(stdout), bytes(stderr)

    def _on_stream_data(self, session: ExecSession, channel: Channel, data: bytes) -> None:
        if session.transition(ExecState.RUNNING):
            self.broker.publish(
                ExecEvent(action="running", exec_id=session.id, container_id=session.container_id)
            )
        self.broker.publish(
            ExecOutputEvent(
                exec_id=session.id,
                container_id=session.container_id,
                channel=channel,
                data=data,
            )
        )

    async def _on_stream_end(self, session: ExecSession) -> None:
        exit_code: int | None = None
        try:
            exit_code = (await self.inspect(session.id)).exit_code
        except Exception as exc:
            # the process is gone either way; finish without an exit code
            logger.warning("Could not read exit code", exec_id=session.id, err=str(exc))
        self._finish(session, exit_code)

    def _on_stream_error(self, session: ExecSession, exc: BaseException) -> None:
        logger.warning("Exec stream failed", exec_id=session.id, err=str(exc))
        if session.transition(ExecState.STOPPED):
            self.broker.publish(
                ExecEvent(action="stopped", exec_id=session.id, container_id=session.container_id)
            )
        self.broker.publish(
            ErrorEvent(message=str(exc), exec_id=session.id, container_id=session.container_id)
        )

    def _finish(self, session: ExecSession, exit_code: int | None) -> None:
        if not session.transition(ExecState.EXITED, exit_code=exit_code):
            return
        self.broker.publish(
            ExecEvent(
                action="ended",
                exec_id=session.id,
                container_id=session.container_id,
                exit_code=exit_code,
            )
        )
        logger.info("Exec session ended", exec_id=session.id, exit_code=exit_code)
