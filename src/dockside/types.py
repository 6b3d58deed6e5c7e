"""Data models for exec sessions and engine payloads."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from dockside.errors import ValidationError

if TYPE_CHECKING:
    from dockside.exec._session_stream import SessionStream


def utcnow() -> datetime:
    return datetime.now(UTC)


class ExecState(StrEnum):
    CREATED = "created"
    STARTED = "started"
    RUNNING = "running"
    EXITED = "exited"
    STOPPED = "stopped"


# Forward-only state machine. exited/stopped are terminal.
_TRANSITIONS: dict[ExecState, frozenset[ExecState]] = {
    ExecState.CREATED: frozenset({ExecState.STARTED, ExecState.STOPPED}),
    ExecState.STARTED: frozenset({ExecState.RUNNING, ExecState.EXITED, ExecState.STOPPED}),
    ExecState.RUNNING: frozenset({ExecState.EXITED, ExecState.STOPPED}),
    ExecState.EXITED: frozenset(),
    ExecState.STOPPED: frozenset(),
}


@dataclass
class ExecSession:
    id: str
    container_id: str
    command: list[str]
    tty: bool = False
    state: ExecState = ExecState.CREATED
    created: datetime = field(default_factory=utcnow)
    started: datetime | None = None
    finished: datetime | None = None
    exit_code: int | None = None

    @property
    def running(self) -> bool:
        return self.state in (ExecState.STARTED, ExecState.RUNNING)

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def can_transition(self, new: ExecState) -> bool:
        return new in _TRANSITIONS[self.state]

    def transition(self, new: ExecState, *, exit_code: int | None = None) -> bool:
        """Move forward to ``new``. Returns False (and changes nothing) otherwise."""
        if not self.can_transition(new):
            return False
        self.state = new
        now = utcnow()
        if new is ExecState.STARTED:
            self.started = now
        elif new in (ExecState.EXITED, ExecState.STOPPED):
            self.finished = now
            if new is ExecState.EXITED:
                self.exit_code = exit_code
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "container_id": self.container_id,
            "command": list(self.command),
            "tty": self.tty,
            "state": self.state.value,
            "running": self.running,
            "created": self.created.isoformat(),
            "started": self.started.isoformat() if self.started else None,
            "finished": self.finished.isoformat() if self.finished else None,
            "exit_code": self.exit_code,
        }


@dataclass
class ExecSpec:
    """What to run and how to attach, as sent to the engine's exec create."""

    cmd: list[str]
    attach_stdin: bool = False
    attach_stdout: bool = True
    attach_stderr: bool = True
    tty: bool = False
    env: list[str] | None = None
    user: str | None = None
    working_dir: str | None = None
    privileged: bool = False
    detach_keys: str | None = None

    def __post_init__(self) -> None:
        if not self.cmd:
            raise ValidationError("Exec command must contain at least one argument")
        if not all(isinstance(arg, str) for arg in self.cmd):
            raise ValidationError("Exec command arguments must be strings")

    def to_engine(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "Cmd": list(self.cmd),
            "AttachStdin": self.attach_stdin,
            "AttachStdout": self.attach_stdout,
            "AttachStderr": self.attach_stderr,
            "Tty": self.tty,
            "Privileged": self.privileged,
        }
        if self.env is not None:
            body["Env"] = list(self.env)
        if self.user:
            body["User"] = self.user
        if self.working_dir:
            body["WorkingDir"] = self.working_dir
        if self.detach_keys:
            body["DetachKeys"] = self.detach_keys
        return body


@dataclass(frozen=True)
class ExecStartOptions:
    detach: bool = False
    tty: bool = False

    def to_engine(self) -> dict[str, Any]:
        return {"Detach": self.detach, "Tty": self.tty}


@dataclass(frozen=True)
class TerminalSize:
    height: int
    width: int

    def __post_init__(self) -> None:
        if self.height <= 0 or self.width <= 0:
            raise ValidationError(
                f"Terminal size must be positive, got {self.width}x{self.height}"
            )


@dataclass(frozen=True)
class ProcessConfig:
    privileged: bool = False
    user: str = ""
    tty: bool = False
    entrypoint: str = ""
    arguments: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExecInspect:
    id: str
    running: bool
    exit_code: int | None
    pid: int = 0
    container_id: str = ""
    open_stdin: bool = False
    open_stdout: bool = False
    open_stderr: bool = False
    can_remove: bool = False
    detach_keys: str = ""
    process_config: ProcessConfig = field(default_factory=ProcessConfig)

    @classmethod
    def from_engine(cls, raw: dict[str, Any]) -> ExecInspect:
        running = bool(raw.get("Running", False))
        proc = raw.get("ProcessConfig") or {}
        return cls(
            id=raw.get("ID", ""),
            running=running,
            # The engine reports ExitCode 0 while a process is still running
            exit_code=None if running else raw.get("ExitCode"),
            pid=raw.get("Pid", 0) or 0,
            container_id=raw.get("ContainerID", ""),
            open_stdin=bool(raw.get("OpenStdin", False)),
            open_stdout=bool(raw.get("OpenStdout", False)),
            open_stderr=bool(raw.get("OpenStderr", False)),
            can_remove=bool(raw.get("CanRemove", False)),
            detach_keys=raw.get("DetachKeys") or "",
            process_config=ProcessConfig(
                privileged=bool(proc.get("privileged", False)),
                user=proc.get("user", "") or "",
                tty=bool(proc.get("tty", False)),
                entrypoint=proc.get("entrypoint", "") or "",
                arguments=list(proc.get("arguments") or []),
            ),
        )


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {"stdout": self.stdout, "stderr": self.stderr, "exit_code": self.exit_code}


@dataclass
class InteractiveSession:
    """Handle returned by ExecSessionManager.interactive()."""

    exec_id: str
    stream: SessionStream
    resize: Callable[[int, int], Awaitable[None]]
    kill: Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class FileInfo:
    name: str
    path: str
    size: int
    mode: int
    mtime: datetime
    is_directory: bool
    is_symlink: bool
    link_target: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "mode": self.mode,
            "mtime": self.mtime.isoformat(),
            "is_directory": self.is_directory,
            "is_symlink": self.is_symlink,
            "link_target": self.link_target,
        }
