"""
Incremental decoder for Docker's multiplexed attach stream.

With ``tty=False`` the daemon frames every write as::

    [stream:1][0:3][size:4 big-endian][payload:size]

where ``stream`` is 0 (stdin), 1 (stdout) or 2 (stderr). Chunks read from the
socket can split a header or payload anywhere, so the decoder keeps whatever is
left over until the next ``feed``.
"""
from __future__ import annotations

import codecs
import struct
from typing import Iterator, List, Tuple

STDIN, STDOUT, STDERR = 0, 1, 2
HEADER = struct.Struct(">BxxxL")
HEADER_SIZE = HEADER.size  # 8

DEFAULT_MAX_OUTPUT = 1024 * 1024
TRUNCATED_MARKER = "\n[output truncated]"


class FrameError(ValueError):
    pass


class FrameDecoder:
    def __init__(self) -> None:
        self._buf = bytearray()

    @property
    def pending(self) -> int:
        """Bytes held back waiting for the rest of a frame."""
        return len(self._buf)

    def feed(self, chunk: bytes) -> Iterator[Tuple[int, bytes]]:
        self._buf.extend(chunk)
        while len(self._buf) >= HEADER_SIZE:
            stream, size = HEADER.unpack_from(self._buf)
            if stream not in (STDIN, STDOUT, STDERR):
                raise FrameError(f"unknown stream type {stream}")
            end = HEADER_SIZE + size
            if len(self._buf) < end:
                return
            payload = bytes(self._buf[HEADER_SIZE:end])
            del self._buf[:end]
            yield stream, payload


class _StreamText:
    def __init__(self, limit: int) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: List[str] = []
        self._size = 0
        self._limit = limit
        self.truncated = False

    def write(self, data: bytes) -> None:
        if self.truncated:
            return
        room = self._limit - self._size
        if len(data) > room:
            data = data[:room]
            self.truncated = True
        self._size += len(data)
        self._parts.append(self._decoder.decode(data))

    def text(self) -> str:
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._parts.append(tail)
        out = "".join(self._parts)
        return out + TRUNCATED_MARKER if self.truncated else out


class OutputCollector:
    """Splits decoded frames into stdout/stderr text, capped per stream."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_OUTPUT) -> None:
        self._decoder = FrameDecoder()
        self._out = _StreamText(max_bytes)
        self._err = _StreamText(max_bytes)

    def feed(self, chunk: bytes) -> None:
        for stream, payload in self._decoder.feed(chunk):
            if stream == STDOUT:
                self._out.write(payload)
            elif stream == STDERR:
                self._err.write(payload)

    @property
    def stdout(self) -> str:
        return self._out.text()

    @property
    def stderr(self) -> str:
        return self._err.text()


def encode_frame(stream: int, payload: bytes) -> bytes:
    return HEADER.pack(stream, len(payload)) + payload
