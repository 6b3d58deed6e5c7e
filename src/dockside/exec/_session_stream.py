"""Session-aware wrapper around an interactive (TTY) exec stream.

Reading drives the session lifecycle: the first chunk marks the session
running, end of stream marks it exited, a transport error marks it stopped.
Every chunk is also published as an ExecOutputEvent.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from dockside.errors import StreamError
from dockside.stream_codec import Channel

if TYPE_CHECKING:
    from dockside.engine.client import DuplexStream
    from dockside.exec.manager import ExecSessionManager
    from dockside.types import ExecSession


class SessionStream:
    def __init__(
        self,
        manager: ExecSessionManager,
        session: ExecSession,
        raw: DuplexStream,
    ) -> None:
        self._manager = manager
        self._session = session
        self._raw = raw
        self._ended = False

    @property
    def exec_id(self) -> str:
        return self._session.id

    @property
    def closed(self) -> bool:
        return self._ended or self._raw.closed

    async def read(self, n: int = 65536) -> bytes:
        if self._ended:
            return b""
        try:
            chunk = await self._raw.read(n)
        except OSError as exc:
            self._ended = True
            self._manager._on_stream_error(self._session, exc)
            raise StreamError(
                f"Exec stream {self._session.id} failed: {exc}", details={"err": str(exc)}
            ) from exc
        if not chunk:
            self._ended = True
            await self._manager._on_stream_end(self._session)
            return b""
        # TTY streams are unframed, everything is stdout
        self._manager._on_stream_data(self._session, Channel.STDOUT, chunk)
        return chunk

    async def write(self, data: bytes) -> None:
        if self._ended:
            raise StreamError(f"Exec stream {self._session.id} has ended")
        await self._raw.write(data)

    async def close(self) -> None:
        await self._raw.close()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_chunks()

    async def _iter_chunks(self) -> AsyncIterator[bytes]:
        while chunk := await self.read():
            yield chunk
