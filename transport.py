"""WebSocket transport streaming PCM to the chat voice backend.

Audio goes out as binary frames and control messages as JSON keyed by
``action``. Incoming events are JSON objects keyed by ``type``. Anything the
session does not recognise as a transcript or lifecycle event is forwarded
as a generic payload so the chat pipeline can render structured agent
output.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from errors import (
    TransportOpenFailed,
    TransportReceiveFailed,
    TransportSendFailed,
    classify_error,
)
from models import TransportEvent

try:
    from websockets.sync.client import connect as ws_connect
except Exception:  # pragma: no cover
    ws_connect = None  # type: ignore

logger = logging.getLogger(__name__)

_WS_SCHEMES = {"http": "ws", "https": "wss"}


def build_url(url: str, session_id: str = "") -> str:
    """Map http(s) to ws(s) and add the ``session_id`` query parameter."""
    parts = urlsplit(url.strip())
    scheme = _WS_SCHEMES.get(parts.scheme.lower(), parts.scheme)
    query = parse_qsl(parts.query, keep_blank_values=True)
    if session_id and not any(key == "session_id" for key, _ in query):
        query.append(("session_id", session_id))
    return urlunsplit((scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _extract_text(data: dict) -> str:
    for key in ("text", "transcript"):
        value = data.get(key)
        if isinstance(value, str):
            return value
    result = data.get("result")
    if isinstance(result, dict):
        for key in ("text", "transcript"):
            value = result.get(key)
            if isinstance(value, str):
                return value
    utterances = data.get("utterances")
    if isinstance(utterances, list):
        parts = [
            str(item.get("text", "")).strip()
            for item in utterances
            if isinstance(item, dict)
        ]
        return "".join(part for part in parts if part)
    return ""


def _error_code(value: Any) -> str:
    # Backend codes are numeric but arrive as int, float or string
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, float):
        return str(int(value))
    return str(value).strip()


def parse_event(raw: Any) -> Optional[TransportEvent]:
    """Decode one backend message; returns None for frames to skip."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Ignoring binary frame from backend (%d bytes)", len(raw))
            return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Undecodable backend message: %.80r", raw)
        return None
    if not isinstance(data, dict):
        logger.warning("Unexpected backend message: %.80r", raw)
        return None

    kind = str(data.get("type", "")).strip().lower()
    if kind == "asr_result":
        text = _extract_text(data)
        if data.get("is_final") is True:
            return TransportEvent.final(text)
        return TransportEvent.partial(text)
    if kind in ("partial", "partial_transcript"):
        return TransportEvent.partial(_extract_text(data))
    if kind in ("asr_complete", "final", "final_transcript"):
        return TransportEvent.final(_extract_text(data))
    if kind == "task_id":
        task_id = str(data.get("task_id") or "").strip()
        if not task_id:
            return TransportEvent.generic_payload(data)
        return TransportEvent.upstream_task_id(task_id)
    if kind in ("done", "completed"):
        return TransportEvent.completed()
    if kind in ("cancelled", "canceled", "stopped"):
        return TransportEvent.cancelled()
    if kind == "error":
        message = str(data.get("message") or data.get("msg") or "unknown error")
        return TransportEvent.error(_error_code(data.get("code")), message)
    return TransportEvent.generic_payload(data)


class WebSocketTransport:
    def __init__(
        self,
        url: str,
        api_key: str = "",
        sample_rate: int = 16000,
        channels: int = 1,
        open_timeout_s: float = 5.0,
        close_timeout_s: float = 1.0,
    ) -> None:
        self._url = url
        # The chat backend authenticates with a session id
        self._api_key = api_key
        self._sample_rate = sample_rate
        self._channels = channels
        self._open_timeout_s = open_timeout_s
        self._close_timeout_s = close_timeout_s
        self._ws: Any = None
        self._lock = threading.Lock()

    def start(self) -> None:
        if ws_connect is None:
            raise TransportOpenFailed("websockets is not installed")
        if not self._url:
            raise TransportOpenFailed("No transport URL configured")
        url = build_url(self._url, self._api_key)
        headers = {}
        if self._api_key:
            headers["X-Session-Id"] = self._api_key
        try:
            ws = ws_connect(
                url,
                additional_headers=headers,
                open_timeout=self._open_timeout_s,
                close_timeout=self._close_timeout_s,
            )
        except Exception as exc:
            raise TransportOpenFailed(
                f"connect to {self._url} failed: {exc}",
                code=classify_error(str(exc), default=TransportOpenFailed.code),
            ) from exc
        with self._lock:
            self._ws = ws
        logger.info(
            "Transport connected to %s (%d Hz, %d ch pcm)",
            self._url,
            self._sample_rate,
            self._channels,
        )

    def send_audio_chunk(self, data: bytes) -> None:
        if not data:
            return
        ws = self._require()
        try:
            ws.send(bytes(data))
        except Exception as exc:
            raise TransportSendFailed(str(exc)) from exc

    def send_audio_done(self, fallback_text: str, is_final: bool) -> None:
        message: dict = {"action": "audio_record_done"}
        text = fallback_text.strip()
        if text:
            message["asr_result"] = {"text": text, "is_final": is_final}
        self._send_json(message)

    def send_cancel(self) -> None:
        self._send_json({"action": "cancel"})

    def receive_event(self) -> TransportEvent:
        while True:
            ws = self._ws
            if ws is None:
                raise TransportReceiveFailed("transport is closed")
            try:
                message = ws.recv()
            except Exception as exc:
                raise TransportReceiveFailed(str(exc)) from exc
            event = parse_event(message)
            if event is not None:
                return event

    def close(self) -> None:
        with self._lock:
            ws = self._ws
            self._ws = None
        if ws is None:
            return
        try:
            ws.close()
        except Exception as exc:
            logger.debug("WebSocket close failed: %s", exc)

    def _send_json(self, message: dict) -> None:
        ws = self._require()
        try:
            ws.send(json.dumps(message, ensure_ascii=False))
        except Exception as exc:
            raise TransportSendFailed(str(exc)) from exc

    def _require(self) -> Any:
        ws = self._ws
        if ws is None:
            raise TransportSendFailed("transport is not connected")
        return ws
