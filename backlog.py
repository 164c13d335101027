"""Bounded FIFO byte buffer between audio capture and the transport."""

from __future__ import annotations

import logging
import threading
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 512 * 1024


class PCMBacklog:
    """Thread-safe PCM buffer with a peek-then-acknowledge drain protocol.

    A producer appends captured audio while a sender peeks at the head,
    transmits it, and only then drops the transmitted bytes. A failed send
    leaves the bytes in place so the next attempt retries the same data.

    When the buffer grows past ``max_bytes`` the oldest bytes are trimmed.
    ``head_position`` is the absolute stream offset of the first buffered
    byte, so a sender can acknowledge a peeked range even if a trim moved the
    head while the send was in flight.
    """

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.max_bytes = max_bytes
        self._buffer = bytearray()
        self._head_position = 0
        self._trimmed_bytes = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def head_position(self) -> int:
        with self._lock:
            return self._head_position

    @property
    def trimmed_bytes(self) -> int:
        with self._lock:
            return self._trimmed_bytes

    def append(self, data: bytes) -> None:
        if not data:
            return
        with self._lock:
            self._buffer.extend(data)
            overflow = len(self._buffer) - self.max_bytes
            if overflow > 0:
                del self._buffer[:overflow]
                self._head_position += overflow
                self._trimmed_bytes += overflow
        if overflow > 0:
            logger.warning("PCM backlog over cap, trimmed %d oldest bytes", overflow)

    def peek(self, max_bytes: int) -> Optional[bytes]:
        if max_bytes <= 0:
            return None
        with self._lock:
            if not self._buffer:
                return None
            return bytes(self._buffer[:max_bytes])

    def peek_range(self, max_bytes: int) -> Optional[Tuple[int, bytes]]:
        """Like ``peek``, also returning the stream offset of the first byte."""
        if max_bytes <= 0:
            return None
        with self._lock:
            if not self._buffer:
                return None
            return self._head_position, bytes(self._buffer[:max_bytes])

    def drop_first(self, count: int) -> None:
        if count < 0:
            raise ValueError("count must not be negative")
        with self._lock:
            count = min(count, len(self._buffer))
            del self._buffer[:count]
            self._head_position += count

    def acknowledge(self, start_position: int, count: int) -> int:
        """Drop a sent range that began at ``start_position``.

        Returns the number of bytes actually removed, which is smaller than
        ``count`` when part of the range was already trimmed.
        """
        with self._lock:
            end = start_position + count
            remove = min(max(0, end - self._head_position), len(self._buffer))
            del self._buffer[:remove]
            self._head_position += remove
            return remove

    def clear(self) -> None:
        with self._lock:
            self._head_position += len(self._buffer)
            self._buffer.clear()
