"""Microphone capture source producing 16-bit PCM chunks."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Optional

from models import AudioChunk

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

LevelCallback = Callable[[float], None]

_NOISE_FLOOR = 0.008
_LEVEL_GAIN = 6.8
_LEVEL_CURVE = 0.55


def compute_level(samples: Any) -> float:
    """Map a block of int16 samples to a 0..1 level for UI reactivity."""
    if np is None:
        return 0.0
    data = np.asarray(samples, dtype=np.float32).reshape(-1) / 32768.0
    if data.size == 0:
        return 0.0
    magnitude = np.abs(data)
    rms = float(np.sqrt(np.mean(magnitude * magnitude)))
    peak = float(np.max(magnitude))
    raw = rms * 0.6 + peak * 0.4
    normalized = max(0.0, raw - _NOISE_FLOOR) / max(0.0001, 1.0 - _NOISE_FLOOR)
    gained = min(normalized * _LEVEL_GAIN, 1.0)
    return float(gained ** _LEVEL_CURVE)


class SoundDeviceCaptureSource:
    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_ms: int = 100,
        max_buffered_chunks: int = 200,
        on_level: Optional[LevelCallback] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self.dropped_chunks = 0
        self._on_level = on_level
        self._stream: Any = None
        self._running = False
        self._permission_granted = False
        self._level = 0.0
        self._sequence = 0
        self._chunks: Deque[AudioChunk] = deque()
        self._max_buffered_chunks = max_buffered_chunks
        self._lock = threading.Lock()
        self._buffer_lock = threading.Lock()

    @property
    def level(self) -> float:
        return self._level

    @property
    def is_running(self) -> bool:
        return self._running

    def request_permission(self) -> bool:
        if self._permission_granted:
            return True
        if sd is None:
            raise RuntimeError("sounddevice is not installed")
        try:
            sd.check_input_settings(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
            )
        except Exception as exc:
            logger.warning("Microphone unavailable: %s", exc)
            return False
        self._permission_granted = True
        return True

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise RuntimeError("sounddevice is not installed")
            with self._buffer_lock:
                self._chunks.clear()
                self._sequence = 0
            self._level = 0.0
            blocksize = int(self.sample_rate * (self.chunk_ms / 1000.0))
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
                blocksize=blocksize,
                callback=self._on_audio,
            )
            self._running = True
            try:
                self._stream.start()
            except Exception:
                self._running = False
                self._close_stream()
                raise
            logger.info("Capture started (%d Hz, %d ch)", self.sample_rate, self.channels)

    def stop(self, discard: bool = False) -> bytes:
        with self._lock:
            was_running = self._running
            self._running = False
            self._close_stream()
            self._level = 0.0
            data = self.drain()
        if was_running:
            if discard:
                logger.info("Capture stopped (discard)")
            else:
                logger.info("Capture stopped, tail bytes=%d", len(data))
        return b"" if discard else data

    def drain(self) -> bytes:
        with self._buffer_lock:
            if not self._chunks:
                return b""
            data = b"".join(chunk.pcm16_bytes for chunk in self._chunks)
            self._chunks.clear()
        return data

    def _close_stream(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:  # pragma: no cover - device already gone
            logger.debug("Closing input stream failed: %s", exc)

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running:
            return
        if np is None:
            return
        samples = np.asarray(indata, dtype=np.int16)
        payload = samples.tobytes()
        self._level = compute_level(samples)
        if self._on_level is not None:
            self._on_level(self._level)
        with self._buffer_lock:
            if len(self._chunks) >= self._max_buffered_chunks:
                self._chunks.popleft()
                self.dropped_chunks += 1
            self._chunks.append(
                AudioChunk(
                    pcm16_bytes=payload,
                    sequence=self._sequence,
                    sample_rate=self.sample_rate,
                    channels=self.channels,
                    timestamp_ms=int(time.time() * 1000),
                )
            )
            self._sequence += 1
