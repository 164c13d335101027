"""Transport adapter using DashScope realtime speech recognition.

``paraformer-realtime-v2`` accepts raw PCM frames over a streaming
connection and reports sentences through a callback object. The callback
runs on the SDK's own thread, so results are handed to the session through
a queue that ``receive_event`` blocks on.
"""

from __future__ import annotations

import logging
import os
import threading
from queue import Empty, Queue
from typing import Any, List

from errors import (
    AUTH_FAILED,
    TransportOpenFailed,
    TransportReceiveFailed,
    TransportSendFailed,
    classify_error,
)
from models import TransportEvent

try:
    import dashscope
    from dashscope.audio.asr import Recognition
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore
    Recognition = None  # type: ignore

logger = logging.getLogger(__name__)


def _is_sentence_end(sentence: dict) -> bool:
    if sentence.get("sentence_end"):
        return True
    return sentence.get("end_time") is not None


class _RecognitionCallback:
    """Receives SDK callbacks and turns them into transport events."""

    def __init__(self, transport: "DashscopeTransport") -> None:
        self._transport = transport

    def on_open(self) -> None:
        logger.debug("DashScope recognition opened")

    def on_close(self) -> None:
        logger.debug("DashScope recognition closed")

    def on_event(self, result: Any) -> None:
        self._transport._ingest_result(result)

    def on_complete(self) -> None:
        self._transport._finish()

    def on_error(self, result: Any) -> None:
        code = str(getattr(result, "code", "") or getattr(result, "status_code", "") or "")
        message = str(getattr(result, "message", "") or "recognition failed")
        self._transport._push(TransportEvent.error(code or classify_error(message), message))


class DashscopeTransport:
    def __init__(
        self,
        api_key: str,
        model: str = "paraformer-realtime-v2",
        sample_rate: int = 16000,
        poll_interval_s: float = 0.1,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._sample_rate = sample_rate
        self._poll_interval_s = poll_interval_s
        self._recognition: Any = None
        self._events: Queue[TransportEvent] = Queue()
        self._closed = threading.Event()
        self._stop_requested = False
        self._lock = threading.Lock()
        self._sentences: List[str] = []
        self._current = ""

    def start(self) -> None:
        if Recognition is None:
            raise TransportOpenFailed("dashscope is not installed")
        api_key = self._api_key or os.getenv("DASHSCOPE_API_KEY", "")
        if not api_key:
            raise TransportOpenFailed("No API key configured", code=AUTH_FAILED)
        dashscope.api_key = api_key
        recognition = Recognition(
            model=self._model,
            format="pcm",
            sample_rate=self._sample_rate,
            callback=_RecognitionCallback(self),
        )
        try:
            recognition.start()
        except Exception as exc:
            raise TransportOpenFailed(
                str(exc), code=classify_error(str(exc), default=TransportOpenFailed.code)
            ) from exc
        self._recognition = recognition
        logger.info("DashScope recognition started (%s)", self._model)

    def send_audio_chunk(self, data: bytes) -> None:
        recognition = self._require()
        try:
            recognition.send_audio_frame(bytes(data))
        except Exception as exc:
            raise TransportSendFailed(str(exc)) from exc

    def send_audio_done(self, fallback_text: str, is_final: bool) -> None:
        # The realtime API has no field for a client-side transcript; stopping
        # flushes the server and triggers on_complete.
        self._require()
        self._request_stop()

    def send_cancel(self) -> None:
        self._require()
        self._request_stop()

    def receive_event(self) -> TransportEvent:
        while True:
            try:
                return self._events.get(timeout=self._poll_interval_s)
            except Empty:
                if self._closed.is_set():
                    raise TransportReceiveFailed("transport is closed")

    def close(self) -> None:
        self._closed.set()
        if self._recognition is not None:
            self._request_stop()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require(self) -> Any:
        if self._recognition is None or self._closed.is_set():
            raise TransportSendFailed("transport is not connected")
        return self._recognition

    def _request_stop(self) -> None:
        with self._lock:
            if self._stop_requested:
                return
            self._stop_requested = True
        threading.Thread(target=self._stop_worker, daemon=True).start()

    def _stop_worker(self) -> None:
        recognition = self._recognition
        if recognition is None:
            return
        try:
            recognition.stop()
        except Exception as exc:
            if self._closed.is_set():
                logger.debug("DashScope stop after close failed: %s", exc)
                return
            message = str(exc)
            self._push(TransportEvent.error(classify_error(message), message))

    def _push(self, event: TransportEvent) -> None:
        self._events.put(event)

    def _ingest_result(self, result: Any) -> None:
        sentence = result.get_sentence()
        if not isinstance(sentence, dict):
            return
        text = str(sentence.get("text", ""))
        with self._lock:
            if _is_sentence_end(sentence):
                self._sentences.append(text)
                self._current = ""
            else:
                self._current = text
            running = self._running_text()
        self._push(TransportEvent.partial(running))

    def _finish(self) -> None:
        with self._lock:
            text = self._running_text()
        self._push(TransportEvent.final(text))
        self._push(TransportEvent.completed())

    def _running_text(self) -> str:
        return "".join(self._sentences) + self._current
