"""Readers that let matchers sniff a connection without consuming its data."""

from __future__ import annotations

from typing import Any


def _read_full(reader: Any, size: int) -> bytes:
    """Read until ``size`` bytes are gathered, the reader is exhausted or fails."""
    gathered = bytearray()
    while len(gathered) < size:
        try:
            chunk = reader.read(size - len(gathered))
        except OSError:
            break
        if not chunk:
            break
        gathered += chunk
    return bytes(gathered)


class BufferedReader:
    """Replay the bytes already sniffed, then read on from the source.

    Everything read from the source is appended to the shared buffer, so a
    later reader built on the same buffer sees it again.
    """

    def __init__(self, source: Any, buffer: bytearray) -> None:
        self._source = source
        self._buffer = buffer
        self._position = 0
        self._end = len(buffer)

    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes; an empty result means end of stream."""
        if size < 0:
            raise ValueError("read size must not be negative")
        stop = min(self._end, self._position + size)
        replayed = bytes(self._buffer[self._position:stop])
        self._position = stop

        remaining = size - len(replayed)
        if remaining == 0:
            return replayed
        try:
            fresh = self._source.read(remaining) or b""
        except OSError:
            if replayed:
                return replayed
            raise
        self._buffer.extend(fresh)
        return replayed + fresh