"""Container filesystem helpers built on one-shot exec.

Each operation shells out (``ls``/``stat``/``mkdir``/``cp``/``mv``/``rm``)
through ExecSessionManager.command() and maps a non-zero exit to an error.
Mutations are published as FilesEvent.
"""

from __future__ import annotations

import posixpath
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from dockside.errors import EngineIOError, NotFoundError
from dockside.event_bus import FilesEvent
from dockside.logger import logger
from dockside.types import FileInfo

if TYPE_CHECKING:
    from dockside.exec.manager import ExecSessionManager

# drwxr-xr-x 2 root root 4096 2024-01-01 12:00 name
_LS_LINE = re.compile(
    r"^([dlbcps-][rwxsStT-]{9})\S*\s+\d+\s+\S+\s+\S+\s+(\d+)\s+(\S+\s+\S+)\s+(.+)$"
)


def permissions_to_mode(permissions: str) -> int:
    """``-rwxr-x---`` -> ``0o750``. Special bits (s/t) are not decoded."""
    mode = 0
    bits = permissions[1:10]
    for i, (flag, expected) in enumerate(zip(bits, "rwxrwxrwx")):
        if flag == expected or (expected == "x" and flag in "sStT" and flag.islower()):
            mode |= 1 << (8 - i)
    return mode


def parse_ls_output(output: str, base_path: str, *, include_hidden: bool = False) -> list[FileInfo]:
    """Parse ``ls -la --time-style=long-iso`` output into FileInfo records."""
    files: list[FileInfo] = []
    for line in output.splitlines():
        if not line or line.startswith("total"):
            continue
        match = _LS_LINE.match(line)
        if not match:
            continue
        permissions, size, stamp, name = match.groups()
        link_target = None
        if permissions.startswith("l") and " -> " in name:
            name, link_target = name.split(" -> ", 1)
        if name in (".", ".."):
            continue
        if not include_hidden and name.startswith("."):
            continue
        try:
            mtime = datetime.strptime(stamp, "%Y-%m-%d %H:%M").replace(tzinfo=UTC)
        except ValueError:
            mtime = datetime.fromtimestamp(0, UTC)
        files.append(
            FileInfo(
                name=name,
                path=posixpath.join(base_path, name),
                size=int(size),
                mode=permissions_to_mode(permissions),
                mtime=mtime,
                is_directory=permissions.startswith("d"),
                is_symlink=permissions.startswith("l"),
                link_target=link_target,
            )
        )
    return files


class ContainerFiles:
    """Filesystem operations inside a container, via exec."""

    def __init__(self, manager: ExecSessionManager) -> None:
        self.manager = manager

    async def list_dir(
        self,
        container_id: str,
        path: str,
        *,
        recursive: bool = False,
        include_hidden: bool = False,
    ) -> list[FileInfo]:
        cmd = ["ls", "-la", "--time-style=long-iso"]
        if recursive:
            cmd.append("-R")
        cmd.append(path)
        result = await self.manager.command(container_id, cmd)
        if not result.ok:
            raise EngineIOError(f"Failed to list directory: {result.stderr}")
        files = parse_ls_output(result.stdout, path, include_hidden=include_hidden)
        logger.debug("Listed files", container=container_id, path=path, count=len(files))
        return files

    async def stat(self, container_id: str, path: str) -> FileInfo:
        result = await self.manager.command(
            container_id, ["stat", "--format=%s|%f|%Y|%F|%n", path]
        )
        if not result.ok:
            raise NotFoundError("File", path)
        # name last: it is the only field that may contain the separator
        size, mode, mtime, kind, name = result.stdout.strip().split("|", 4)
        return FileInfo(
            name=posixpath.basename(name),
            path=name,
            size=int(size),
            mode=int(mode, 16) & 0o7777,
            mtime=datetime.fromtimestamp(int(mtime), UTC),
            is_directory=kind == "directory",
            is_symlink=kind == "symbolic link",
        )

    async def delete(self, container_id: str, path: str) -> None:
        await self._mutate(container_id, ["rm", "-rf", path], "delete", path)

    async def mkdir(
        self,
        container_id: str,
        path: str,
        *,
        recursive: bool = False,
        mode: str | None = None,
    ) -> None:
        cmd = ["mkdir"]
        if recursive:
            cmd.append("-p")
        if mode:
            cmd.append(f"-m{mode}")
        cmd.append(path)
        await self._mutate(container_id, cmd, "mkdir", path)

    async def copy(self, container_id: str, source: str, destination: str) -> None:
        await self._mutate(
            container_id, ["cp", "-r", source, destination], "copy", source, destination
        )

    async def move(self, container_id: str, source: str, destination: str) -> None:
        await self._mutate(container_id, ["mv", source, destination], "move", source, destination)

    async def _mutate(
        self,
        container_id: str,
        cmd: list[str],
        operation: str,
        path: str,
        destination: str | None = None,
    ) -> None:
        result = await self.manager.command(container_id, cmd)
        if not result.ok:
            raise EngineIOError(f"Failed to {operation} {path}: {result.stderr}")
        self.manager.broker.publish(
            FilesEvent(
                operation=operation,  # type: ignore[arg-type]
                path=path,
                destination=destination,
                container_id=container_id,
            )
        )
        logger.info(
            "File operation completed",
            container=container_id,
            operation=operation,
            path=path,
            destination=destination,
        )
