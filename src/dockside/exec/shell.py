"""Shell auto-detection for interactive sessions.

Candidates are probed in order with ``<shell> -c "echo <marker>"``; the first
one whose stdout contains the marker wins and later candidates are never
tried. Each probe gets a local timeout since the engine has no exec deadline.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING

from dockside.errors import EngineError, NotFoundError, ShellNotFoundError
from dockside.logger import logger
from dockside.stream_codec import Channel, FrameDecoder
from dockside.types import ExecSpec, ExecStartOptions

if TYPE_CHECKING:
    from dockside.engine.client import EngineClient

DEFAULT_SHELLS: tuple[str, ...] = ("/bin/bash", "/bin/sh", "/bin/ash", "sh")


async def probe_shell(
    engine: EngineClient,
    container_id: str,
    shell: str,
    *,
    timeout: float = 1.0,
    marker: str = "test",
) -> bool:
    """Run one probe; True when the marker shows up on stdout in time."""
    exec_id = await engine.exec_create(
        container_id,
        ExecSpec(cmd=[shell, "-c", f"echo {marker}"], attach_stdout=True, attach_stderr=True),
    )
    decoder = FrameDecoder()
    output = bytearray()
    stream = None
    try:
        # the start handshake shares the timeout
        async with asyncio.timeout(timeout):
            stream = await engine.exec_start(exec_id, ExecStartOptions())
            while chunk := await stream.read():
                for frame in decoder.feed(chunk):
                    if frame.channel is Channel.STDOUT:
                        output += frame.payload
    except TimeoutError:
        logger.debug("Shell probe timed out", shell=shell, container=container_id, timeout=timeout)
    finally:
        if stream is not None:
            await stream.close()
    return marker.encode() in output


async def probe_shells(
    engine: EngineClient,
    container_id: str,
    candidates: Sequence[str] = DEFAULT_SHELLS,
    *,
    timeout: float = 1.0,
    marker: str = "test",
) -> str:
    """Return the first usable shell in ``candidates``.

    A missing container aborts immediately; any other failure just moves on
    to the next candidate. Raises ShellNotFoundError listing every candidate.
    """
    for shell in candidates:
        try:
            if await probe_shell(engine, container_id, shell, timeout=timeout, marker=marker):
                logger.info("Detected shell", container=container_id, shell=shell)
                return shell
        except NotFoundError as exc:
            if exc.resource == "Container":
                raise
            logger.debug("Shell probe failed", shell=shell, container=container_id, err=str(exc))
        except (EngineError, OSError) as exc:
            logger.debug("Shell probe failed", shell=shell, container=container_id, err=str(exc))
    raise ShellNotFoundError(container_id, candidates)
