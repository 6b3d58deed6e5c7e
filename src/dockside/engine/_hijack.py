"""Hijacked exec connections: raw duplex byte streams over the engine socket.

``POST /exec/{id}/start`` with ``Upgrade: tcp`` turns the HTTP connection into
a bidirectional pipe to the process. aiohttp's client can't hand the socket
back after an upgrade, so the handshake is spoken by hand over asyncio
streams and the reader/writer pair is wrapped in :class:`ExecStream`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from dockside.errors import (
    EngineTimeoutError,
    NetworkError,
    ProtocolError,
    error_from_status,
)
from dockside.logger import logger

_MAX_ERROR_BODY = 64 * 1024


@dataclass(frozen=True)
class EngineAddress:
    """Where the engine listens: a unix socket path or a TCP host/port."""

    socket_path: str | None = None
    host: str = "localhost"
    port: int = 2375

    @classmethod
    def parse(cls, url: str) -> EngineAddress:
        if url.startswith("unix://"):
            return cls(socket_path=url.removeprefix("unix://"))
        parts = urlsplit(url)
        return cls(host=parts.hostname or "localhost", port=parts.port or 2375)

    @property
    def base_url(self) -> str:
        # The Host header is ignored on unix sockets, but aiohttp needs a URL
        if self.socket_path:
            return "http://localhost"
        return f"http://{self.host}:{self.port}"

    async def open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if self.socket_path:
            return await asyncio.open_unix_connection(self.socket_path)
        return await asyncio.open_connection(self.host, self.port)


class ExecStream:
    """Duplex byte stream of a started exec instance.

    Reads return ``b""`` at end of stream. For non-TTY sessions the bytes are
    multiplexed frames; for TTY sessions they are raw terminal output.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, n: int = 65536) -> bytes:
        if self._closed:
            return b""
        return await self._reader.read(n)

    async def write(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()

    async def close_write(self) -> None:
        """Half-close: signal EOF on the process's stdin."""
        if self._writer.can_write_eof():
            self._writer.write_eof()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self._writer.wait_closed()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_chunks()

    async def _iter_chunks(self) -> AsyncIterator[bytes]:
        while chunk := await self.read():
            yield chunk


def _parse_head(head: bytes) -> tuple[int, dict[str, str]]:
    try:
        text = head.decode("latin-1")
        status_line, *header_lines = text.rstrip("\r\n").split("\r\n")
        version, status, *_ = status_line.split(" ", 2)
        if not version.startswith("HTTP/"):
            raise ValueError(version)
        code = int(status)
    except ValueError as exc:
        raise ProtocolError(f"Malformed engine response: {head[:80]!r}") from exc
    headers: dict[str, str] = {}
    for line in header_lines:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return code, headers


async def _read_error_message(reader: asyncio.StreamReader, headers: dict[str, str]) -> str:
    length = headers.get("content-length")
    if length is not None and length.isdigit():
        raw = await reader.readexactly(min(int(length), _MAX_ERROR_BODY))
    else:
        raw = await reader.read(_MAX_ERROR_BODY)
    text = raw.decode("utf-8", errors="replace").strip()
    try:
        return json.loads(text).get("message", text)
    except (json.JSONDecodeError, AttributeError):
        return text


async def open_hijacked(
    address: EngineAddress,
    path: str,
    body: dict[str, Any],
    *,
    user_agent: str,
    timeout: float,
    identifier: str,
) -> ExecStream:
    """Send the upgrade request and return the stream once the engine agrees."""
    try:
        reader, writer = await asyncio.wait_for(address.open(), timeout)
    except TimeoutError as exc:
        raise EngineTimeoutError("exec_start", timeout) from exc
    except OSError as exc:
        raise NetworkError(
            f"Cannot connect to the Docker daemon: {exc}", details={"err": str(exc)}
        ) from exc
    payload = json.dumps(body).encode()
    request = (
        f"POST {path} HTTP/1.1\r\n"
        f"Host: {'localhost' if address.socket_path else address.host}\r\n"
        f"User-Agent: {user_agent}\r\n"
        "Content-Type: application/json\r\n"
        f"Content-Length: {len(payload)}\r\n"
        "Connection: Upgrade\r\n"
        "Upgrade: tcp\r\n"
        "\r\n"
    ).encode() + payload

    try:
        writer.write(request)
        await writer.drain()
        head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout)
        status, headers = _parse_head(head)
        if status not in (101, 200):
            message = await asyncio.wait_for(_read_error_message(reader, headers), timeout)
            raise error_from_status(
                status, message, resource="Exec session", identifier=identifier
            )
    except asyncio.IncompleteReadError as exc:
        writer.close()
        raise ProtocolError("Engine closed the connection during exec start") from exc
    except asyncio.LimitOverrunError as exc:
        writer.close()
        raise ProtocolError("Engine response headers too large") from exc
    except TimeoutError as exc:
        writer.close()
        raise EngineTimeoutError("exec_start", timeout) from exc
    except OSError as exc:
        writer.close()
        raise NetworkError(
            f"Engine connection failed during exec start: {exc}", details={"err": str(exc)}
        ) from exc
    except BaseException:
        writer.close()
        raise

    logger.debug("Exec stream attached", exec_id=identifier, status=status)
    return ExecStream(reader, writer)
