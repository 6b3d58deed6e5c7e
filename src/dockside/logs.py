"""Container log retrieval.

Logs of non-TTY containers come back multiplexed; TTY containers return raw
bytes. The container's TTY flag decides which, with a header sniff as the
fallback when inspect does not say.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from dockside.event_bus import LogsEvent
from dockside.logger import logger
from dockside.stream_codec import LineSplitter, demultiplex

if TYPE_CHECKING:
    from dockside.engine.client import EngineClient
    from dockside.event_bus import EventBroker


@dataclass
class ContainerLogs:
    stdout: str
    stderr: str
    stdout_lines: list[str] = field(default_factory=list)
    stderr_lines: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "stdout_lines": self.stdout_lines,
            "stderr_lines": self.stderr_lines,
        }


def _split_lines(text: str) -> list[str]:
    splitter = LineSplitter()
    return splitter.feed(text) + splitter.flush()


async def fetch_logs(
    engine: EngineClient,
    container_id: str,
    *,
    tail: int | None = None,
    timestamps: bool = False,
    broker: EventBroker | None = None,
) -> ContainerLogs:
    """Fetch and demultiplex a container's logs."""
    info = await engine.container_inspect(container_id)
    tty = (info.get("Config") or {}).get("Tty")
    data = await engine.container_logs(container_id, tail=tail, timestamps=timestamps)

    out, err = demultiplex(data, tty=None if tty is None else bool(tty))
    stdout = out.decode("utf-8", errors="replace")
    stderr = err.decode("utf-8", errors="replace")
    logs = ContainerLogs(
        stdout=stdout,
        stderr=stderr,
        stdout_lines=_split_lines(stdout),
        stderr_lines=_split_lines(stderr),
    )

    if broker is not None:
        broker.publish(
            LogsEvent(
                stdout_lines=len(logs.stdout_lines),
                stderr_lines=len(logs.stderr_lines),
                tail=tail,
                container_id=container_id,
            )
        )
    logger.debug(
        "Fetched container logs",
        container=container_id,
        stdout_lines=len(logs.stdout_lines),
        stderr_lines=len(logs.stderr_lines),
    )
    return logs
