"""Codec for the engine's multiplexed stdout/stderr byte stream.

Non-TTY exec, attach and log streams arrive framed::

    header := [8]byte{CHANNEL, 0, 0, 0, SIZE1, SIZE2, SIZE3, SIZE4}
    frame  := header + SIZE bytes of payload

SIZE is a big-endian uint32. TTY sessions are never framed; their bytes pass
through untouched and callers must know which kind of stream they hold.

Decoding is lenient on purpose: unknown channel bytes decode as stdout and
trailing bytes shorter than a full frame are dropped at end of stream rather
than raised. Consumers already depend on that behaviour.
"""

from __future__ import annotations

import struct
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from enum import IntEnum

from dockside.logger import logger

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxI")


class Channel(IntEnum):
    STDIN = 0
    STDOUT = 1
    STDERR = 2

    @classmethod
    def from_byte(cls, value: int) -> Channel:
        """Map a header byte to a channel; unrecognized values read as stdout."""
        try:
            return cls(value)
        except ValueError:
            return cls.STDOUT


@dataclass(frozen=True)
class Frame:
    channel: Channel
    payload: bytes

    @property
    def length(self) -> int:
        return len(self.payload)


def encode_frame(channel: Channel | int, payload: bytes) -> bytes:
    """Build one multiplexed frame (mostly for synthetic test fixtures)."""
    return _HEADER.pack(int(channel), len(payload)) + payload


class FrameDecoder:
    """Incremental decoder holding partial frames across chunk boundaries.

    Feed chunks in arrival order; each call returns the frames completed by
    that chunk. A frame split across any number of chunks is emitted exactly
    once, when its last byte arrives.
    """

    def __init__(self) -> None:
        self._buf = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buf)

    def feed(self, chunk: bytes) -> list[Frame]:
        self._buf += chunk
        frames: list[Frame] = []
        offset = 0
        while len(self._buf) - offset >= HEADER_SIZE:
            channel_byte, size = _HEADER.unpack_from(self._buf, offset)
            end = offset + HEADER_SIZE + size
            if len(self._buf) < end:
                break
            frames.append(
                Frame(Channel.from_byte(channel_byte), bytes(self._buf[offset + HEADER_SIZE : end]))
            )
            offset = end
        if offset:
            del self._buf[:offset]
        return frames

    def flush(self) -> bytes:
        """End of stream: hand back and forget whatever never formed a frame."""
        leftover = bytes(self._buf)
        self._buf.clear()
        return leftover


def _discard(leftover: bytes) -> None:
    if leftover:
        logger.debug("Discarding trailing bytes after last frame", size=len(leftover))


def decode_multiplexed(data: bytes) -> list[Frame]:
    """Decode a complete buffer; an incomplete trailing frame is dropped."""
    decoder = FrameDecoder()
    frames = decoder.feed(data)
    _discard(decoder.flush())
    return frames


def looks_multiplexed(data: bytes) -> bool:
    """Cheap check for a framed buffer: known channel byte, zeroed reserved bytes."""
    if len(data) < HEADER_SIZE:
        return False
    return data[0] in (0, 1, 2) and data[1:4] == b"\x00\x00\x00"


def demultiplex(data: bytes, *, tty: bool | None = None) -> tuple[bytes, bytes]:
    """Split a collected buffer into ``(stdout, stderr)``.

    TTY output comes back whole as stdout. When ``tty`` is None the buffer is
    sniffed with :func:`looks_multiplexed`; an explicit False always decodes
    frames. Stdin echo frames are dropped.
    """
    if tty is None:
        tty = not looks_multiplexed(data)
    if tty:
        return data, b""
    stdout = bytearray()
    stderr = bytearray()
    for frame in decode_multiplexed(data):
        if frame.channel is Channel.STDOUT:
            stdout += frame.payload
        elif frame.channel is Channel.STDERR:
            stderr += frame.payload
    return bytes(stdout), bytes(stderr)


async def iter_frames(chunks: AsyncIterable[bytes]) -> AsyncIterator[Frame]:
    """Decode frames from an async chunk source, in write order."""
    decoder = FrameDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    _discard(decoder.flush())


class LineSplitter:
    """Accumulates decoded text and yields complete, non-blank lines."""

    def __init__(self) -> None:
        self._tail = ""

    def feed(self, text: str) -> list[str]:
        parts = (self._tail + text).split("\n")
        self._tail = parts.pop()
        return [line for line in parts if line.strip()]

    def flush(self) -> list[str]:
        tail, self._tail = self._tail, ""
        return [tail] if tail.strip() else []
