"""State-machine based hold-to-talk session orchestration.

One ``HoldToTalkSession`` lives as long as its input surface. Each press
gets a fresh ``_Press`` holding the generation number, backlog, transport
and transcript for that cycle. Two background threads run per press: a
send loop moving captured audio through the backlog to the transport, and
a receive loop applying transport events. Every state change happens under
``self._lock``. A background thread only acts while its press is still the
live one, so work left over from an older generation is inert.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from backlog import PCMBacklog
from config import SessionConfig
from errors import (
    BACKEND_ERROR,
    CAPTURE_FAILED,
    ERROR_MESSAGES,
    FINALIZE_TIMEOUT,
    PERMISSION_DENIED,
    TRANSPORT_OPEN_FAILED,
    TRANSPORT_RECEIVE_FAILED,
    TRANSPORT_SEND_FAILED,
)
from interfaces import AudioCaptureSource, ChatPipelineAdapter, TransportSession
from models import (
    TERMINAL_EVENT_KINDS,
    MessageHandle,
    SessionState,
    TranscriptState,
    TransportEvent,
    TransportEventKind,
)

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
TranscriptCallback = Callable[[str, bool], None]
ErrorCallback = Callable[[str, str], None]
BusyPredicate = Callable[[], bool]
TransportFactory = Callable[[], TransportSession]

_RECORDING_STATES = (SessionState.PRE_CAPTURING, SessionState.ACTIVE)


@dataclass
class _Press:
    generation: int
    backlog: PCMBacklog
    transcript: TranscriptState = field(default_factory=TranscriptState)
    transport: Optional[TransportSession] = None
    capture_started: bool = False
    ready: bool = False
    cancel_intent: bool = False
    placeholder: Optional[MessageHandle] = None
    placeholder_text: str = ""
    committed: bool = False
    agent_begun: bool = False
    agent_handle: Optional[MessageHandle] = None
    pending_agent_payloads: List[Dict[str, Any]] = field(default_factory=list)
    task_id: str = ""
    audio_done_sent: bool = False
    transport_lost: bool = False
    error_reported: bool = False
    bytes_sent: int = 0
    consecutive_send_failures: int = 0
    sender: Optional[threading.Thread] = None
    receiver: Optional[threading.Thread] = None
    stop_sending: threading.Event = field(default_factory=threading.Event)
    final_event: threading.Event = field(default_factory=threading.Event)
    done_event: threading.Event = field(default_factory=threading.Event)


class HoldToTalkSession:
    def __init__(
        self,
        capture: AudioCaptureSource,
        transport_factory: TransportFactory,
        chat: ChatPipelineAdapter,
        config: Optional[SessionConfig] = None,
        on_state_change: Optional[StateCallback] = None,
        on_transcript: Optional[TranscriptCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        is_agent_busy: Optional[BusyPredicate] = None,
    ) -> None:
        self._capture = capture
        self._transport_factory = transport_factory
        self._chat = chat
        self._config = config or SessionConfig()
        self._on_state_change = on_state_change
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._is_agent_busy = is_agent_busy

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._generation = 0
        self._press: Optional[_Press] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def transcript(self) -> TranscriptState:
        with self._lock:
            press = self._press
            if press is None:
                return TranscriptState()
            return TranscriptState(press.transcript.text, press.transcript.is_final)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def begin_press(self) -> None:
        with self._lock:
            if self._state in _RECORDING_STATES:
                return
            previous = self._press
            if previous is not None:
                logger.info("New press supersedes generation %d", previous.generation)
                self._cancel(previous, through_cancelling=False)
            self._generation += 1
            press = _Press(
                generation=self._generation,
                backlog=PCMBacklog(self._config.backlog_max_bytes),
            )
            self._press = press
            self._transition(SessionState.PRE_CAPTURING)
        logger.info("Press down, starting pre-capture (gen=%d)", press.generation)
        self._start_press(press)

    def reveal(self) -> None:
        with self._lock:
            press = self._press
            if press is None or self._state != SessionState.PRE_CAPTURING:
                return
            if self._agent_busy():
                logger.info("Agent is replying, not revealing (gen=%d)", press.generation)
                return
            self._reveal(press)

    def update_drag_cancel_intent(self, is_canceling: bool) -> None:
        with self._lock:
            press = self._press
            if press is None or self._state not in _RECORDING_STATES:
                return
            if press.cancel_intent != is_canceling:
                logger.debug("Cancel intent -> %s (gen=%d)", is_canceling, press.generation)
            press.cancel_intent = is_canceling

    def release(self, is_cancel: bool = False) -> None:
        with self._lock:
            press = self._press
            if press is None or self._state not in _RECORDING_STATES:
                return
            if is_cancel or press.cancel_intent:
                self._cancel(press, through_cancelling=self._state == SessionState.ACTIVE)
                return
            if not press.ready:
                logger.info("Released before startup finished (gen=%d)", press.generation)
                self._cancel(press, through_cancelling=False)
                return
            if self._state == SessionState.PRE_CAPTURING:
                if self._agent_busy():
                    self._cancel(press, through_cancelling=False)
                    return
                self._reveal(press)
            self._transition(SessionState.FINALIZING)
        self._finalize(press)

    def abort_pre_capture(self) -> None:
        with self._lock:
            press = self._press
            if press is None or self._state not in _RECORDING_STATES:
                return
            self._cancel(press, through_cancelling=False)

    def force_teardown(self) -> None:
        with self._lock:
            press = self._press
            if press is None:
                return
            logger.info("Forced teardown in %s (gen=%d)", self._state.value, press.generation)
            self._cancel(press, through_cancelling=self._state == SessionState.ACTIVE)

    # ------------------------------------------------------------------
    # Press startup
    # ------------------------------------------------------------------

    def _start_press(self, press: _Press) -> None:
        try:
            granted = self._capture.request_permission()
        except Exception as exc:
            self._abort_start(press, CAPTURE_FAILED, f"permission check failed: {exc}")
            return
        if not granted:
            self._abort_start(press, PERMISSION_DENIED, ERROR_MESSAGES[PERMISSION_DENIED])
            return

        with self._lock:
            if not self._is_live(press):
                return
        try:
            transport = self._transport_factory()
        except Exception as exc:
            self._abort_start(press, TRANSPORT_OPEN_FAILED, f"transport open failed: {exc}")
            return
        with self._lock:
            press.transport = transport
        try:
            transport.start()
        except Exception as exc:
            code = getattr(exc, "code", TRANSPORT_OPEN_FAILED)
            self._abort_start(press, code, f"transport open failed: {exc}")
            return

        with self._lock:
            if not self._is_live(press):
                self._safe_close(transport)
                return
            try:
                self._capture.start()
            except Exception as exc:
                self._fail(press, CAPTURE_FAILED, f"capture start failed: {exc}")
                return
            press.capture_started = True
            press.sender = threading.Thread(
                target=self._send_loop,
                args=(press,),
                name=f"holdtalk-send-{press.generation}",
                daemon=True,
            )
            press.receiver = threading.Thread(
                target=self._receive_loop,
                args=(press,),
                name=f"holdtalk-recv-{press.generation}",
                daemon=True,
            )
            press.ready = True
            press.sender.start()
            press.receiver.start()
        logger.info("Capture and transport running (gen=%d)", press.generation)

    def _abort_start(self, press: _Press, code: str, message: str) -> None:
        with self._lock:
            if not self._is_live(press):
                if press.transport is not None:
                    self._safe_close(press.transport)
                return
            self._fail(press, code, message)

    def _reveal(self, press: _Press) -> None:
        press.placeholder = self._call_chat(self._chat.create_placeholder_message)
        self._transition(SessionState.ACTIVE)
        if not press.transcript.is_empty:
            self._push_placeholder_text(press, press.transcript.text)

    # ------------------------------------------------------------------
    # Audio path
    # ------------------------------------------------------------------

    def _send_loop(self, press: _Press) -> None:
        poll_s = self._config.send_poll_interval_s
        while not press.stop_sending.is_set():
            with self._lock:
                if not self._is_live(press):
                    return
                chunk = self._capture.drain()
            press.backlog.append(chunk)
            if not press.cancel_intent and not self._send_pending(press):
                if press.consecutive_send_failures > self._config.max_send_failures:
                    self._on_transport_lost(
                        press,
                        TRANSPORT_SEND_FAILED,
                        f"{press.consecutive_send_failures} consecutive audio sends failed",
                    )
                    return
            press.stop_sending.wait(poll_s)

    def _send_pending(self, press: _Press) -> bool:
        """Send backlog chunks until empty; False if a send failed or was held back."""
        transport = press.transport
        if transport is None:
            return False
        while True:
            with self._lock:
                if not self._is_live(press) or press.cancel_intent:
                    return False
            peeked = press.backlog.peek_range(self._config.chunk_bytes)
            if peeked is None:
                return True
            start, chunk = peeked
            try:
                transport.send_audio_chunk(chunk)
            except Exception as exc:
                press.consecutive_send_failures += 1
                logger.debug(
                    "Audio send failed, keeping %d bytes for retry (gen=%d): %s",
                    len(chunk),
                    press.generation,
                    exc,
                )
                return False
            press.consecutive_send_failures = 0
            press.backlog.acknowledge(start, len(chunk))
            press.bytes_sent += len(chunk)

    def _flush_backlog(self, press: _Press) -> bool:
        attempts = max(1, self._config.max_flush_attempts)
        for attempt in range(attempts):
            with self._lock:
                if not self._is_live(press) or press.transport_lost:
                    return False
            if self._send_pending(press):
                return True
            if attempt + 1 < attempts:
                time.sleep(self._config.send_poll_interval_s)
        logger.warning(
            "Gave up flushing %d backlog bytes after %d attempts (gen=%d)",
            len(press.backlog),
            attempts,
            press.generation,
        )
        return False

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def _finalize(self, press: _Press) -> None:
        press.stop_sending.set()
        sender = press.sender
        sender_stopped = True
        if sender is not None:
            sender.join(timeout=self._config.finalize_timeout_s)
            sender_stopped = not sender.is_alive()
            if not sender_stopped:
                logger.warning("Send loop still busy, skipping flush (gen=%d)", press.generation)

        with self._lock:
            if not self._is_live(press):
                return
            tail = self._capture.stop(discard=False)
        press.backlog.append(tail)
        if sender_stopped:
            self._flush_backlog(press)

        with self._lock:
            if not self._is_live(press):
                return
            fallback_text = press.transcript.text
            is_final = press.transcript.is_final
            send_done = not press.transport_lost and press.transport is not None
            press.audio_done_sent = send_done
            # A final that landed before audio_done still ends the wait
            if is_final:
                press.final_event.set()
        if send_done:
            try:
                press.transport.send_audio_done(fallback_text, is_final)
                logger.info(
                    "Audio done sent (gen=%d, bytes=%d)", press.generation, press.bytes_sent
                )
            except Exception as exc:
                self._on_transport_lost(press, TRANSPORT_SEND_FAILED, f"audio-done failed: {exc}")

        got_final = press.final_event.wait(self._config.finalize_timeout_s)
        with self._lock:
            if not self._is_live(press):
                return
            if not got_final:
                logger.warning(
                    "%s: using local transcript (gen=%d)", FINALIZE_TIMEOUT, press.generation
                )
            self._commit_transcript(press)
            if not press.committed or press.transport_lost or press.done_event.is_set():
                self._retire(press)
                return

        if not press.done_event.wait(self._config.reply_timeout_s):
            logger.warning("Agent reply did not complete in time (gen=%d)", press.generation)
        with self._lock:
            if self._is_live(press):
                self._retire(press)

    def _commit_transcript(self, press: _Press) -> None:
        if press.committed:
            return
        if press.transcript.is_empty:
            if press.placeholder is not None:
                self._call_chat(self._chat.remove_placeholder, press.placeholder)
                press.placeholder = None
            if press.pending_agent_payloads:
                logger.info("Empty transcript, dropping %d agent payloads", len(press.pending_agent_payloads))
                press.pending_agent_payloads = []
            return
        self._push_placeholder_text(press, press.transcript.text)
        press.committed = True
        logger.info(
            "Transcript committed (gen=%d, chars=%d)", press.generation, len(press.transcript.text)
        )
        pending = press.pending_agent_payloads
        press.pending_agent_payloads = []
        for payload in pending:
            self._deliver_agent_payload(press, payload)

    def _conclude_locally(self, press: _Press) -> None:
        self._transition(SessionState.FINALIZING)
        press.stop_sending.set()
        self._commit_transcript(press)
        self._retire(press)

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def _receive_loop(self, press: _Press) -> None:
        transport = press.transport
        if transport is None:
            return
        while True:
            with self._lock:
                if not self._is_live(press):
                    return
            try:
                event = transport.receive_event()
            except Exception as exc:
                self._on_transport_lost(
                    press, TRANSPORT_RECEIVE_FAILED, str(exc) or type(exc).__name__
                )
                return
            self._handle_event(press, event)
            if event.kind in TERMINAL_EVENT_KINDS:
                return

    def _handle_event(self, press: _Press, event: TransportEvent) -> None:
        with self._lock:
            if not self._is_live(press):
                logger.debug("Dropping stale %s event (gen=%d)", event.kind.value, press.generation)
                return
            kind = event.kind
            if kind == TransportEventKind.PARTIAL_TRANSCRIPT:
                self._apply_transcript(press, event.text, is_final=False)
            elif kind == TransportEventKind.FINAL_TRANSCRIPT:
                self._apply_transcript(press, event.text, is_final=True)
            elif kind == TransportEventKind.UPSTREAM_TASK_ID:
                press.task_id = event.task_id
                self._route_agent_payload(press, {"type": "task_id", "task_id": event.task_id})
            elif kind == TransportEventKind.GENERIC_PAYLOAD:
                self._route_agent_payload(press, event.payload or {})
            elif kind == TransportEventKind.COMPLETED:
                self._on_completed(press)
            elif kind == TransportEventKind.CANCELLED:
                logger.info("Backend cancelled the stream (gen=%d)", press.generation)
                self._retire(press)
            elif kind == TransportEventKind.ERROR:
                self._on_backend_error(press, event.code or BACKEND_ERROR, event.message)

    def _apply_transcript(self, press: _Press, text: str, is_final: bool) -> None:
        press.transcript = TranscriptState(text=text, is_final=is_final)
        if self._on_transcript:
            self._on_transcript(text, is_final)
        if text.strip():
            self._push_placeholder_text(press, text)
        if is_final and self._state == SessionState.FINALIZING and press.audio_done_sent:
            if text.strip():
                self._commit_transcript(press)
            press.final_event.set()

    def _route_agent_payload(self, press: _Press, payload: Dict[str, Any]) -> None:
        if press.committed:
            self._deliver_agent_payload(press, payload)
        else:
            press.pending_agent_payloads.append(payload)

    def _deliver_agent_payload(self, press: _Press, payload: Dict[str, Any]) -> None:
        if not press.agent_begun:
            press.agent_begun = True
            press.agent_handle = self._call_chat(self._chat.begin_agent_message)
        if press.agent_handle is not None:
            self._call_chat(self._chat.apply_agent_output, press.agent_handle, payload)

    def _on_completed(self, press: _Press) -> None:
        press.done_event.set()
        press.final_event.set()
        if self._state in _RECORDING_STATES:
            logger.warning("Backend completed before release (gen=%d)", press.generation)
            self._conclude_locally(press)

    def _on_backend_error(self, press: _Press, code: str, message: str) -> None:
        logger.error("Backend error %s: %s (gen=%d)", code, message, press.generation)
        self._call_chat(self._chat.report_error, press.agent_handle, message)
        self._fail(press, code, message)

    def _on_transport_lost(self, press: _Press, code: str, message: str) -> None:
        with self._lock:
            if not self._is_live(press) or press.transport_lost:
                return
            press.transport_lost = True
            logger.warning("Transport lost in %s (gen=%d): %s", self._state.value, press.generation, message)
            if self._state == SessionState.PRE_CAPTURING:
                self._fail(press, code, message)
            elif self._state == SessionState.ACTIVE:
                self._report_error(press, code, message)
                self._conclude_locally(press)
            elif self._state == SessionState.FINALIZING:
                if not press.transcript.is_final:
                    self._report_error(press, code, message)
                press.final_event.set()
                press.done_event.set()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _cancel(self, press: _Press, through_cancelling: bool) -> None:
        if through_cancelling:
            self._transition(SessionState.CANCELLING)
        logger.info("Cancelling press (gen=%d)", press.generation)
        press.stop_sending.set()
        press.backlog.clear()
        if press.transport is not None and press.ready:
            try:
                press.transport.send_cancel()
            except Exception as exc:
                logger.debug("Cancel message not delivered (gen=%d): %s", press.generation, exc)
        self._retire(press)

    def _fail(self, press: _Press, code: str, message: str) -> None:
        self._report_error(press, code, message)
        self._retire(press)

    def _retire(self, press: _Press) -> None:
        if self._press is not press:
            return
        press.stop_sending.set()
        press.final_event.set()
        press.done_event.set()
        press.backlog.clear()
        if press.placeholder is not None and not press.committed:
            self._call_chat(self._chat.remove_placeholder, press.placeholder)
            press.placeholder = None
        if press.pending_agent_payloads:
            logger.debug("Dropping %d undelivered agent payloads", len(press.pending_agent_payloads))
            press.pending_agent_payloads = []
        if press.agent_handle is not None:
            self._call_chat(self._chat.end_agent_message, press.agent_handle)
        if press.transport is not None:
            self._safe_close(press.transport)
        if press.capture_started:
            self._safe_stop_capture()
        self._press = None
        logger.info(
            "Press ended (gen=%d, sent=%d bytes, trimmed=%d bytes)",
            press.generation,
            press.bytes_sent,
            press.backlog.trimmed_bytes,
        )
        self._transition(SessionState.IDLE)

    def _report_error(self, press: _Press, code: str, message: str) -> None:
        if press.error_reported:
            return
        press.error_reported = True
        logger.warning("Session error %s: %s (gen=%d)", code, message, press.generation)
        if self._on_error:
            self._on_error(code, message)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_live(self, press: _Press) -> bool:
        return self._press is press and press.generation == self._generation

    def _agent_busy(self) -> bool:
        return bool(self._is_agent_busy and self._is_agent_busy())

    def _push_placeholder_text(self, press: _Press, text: str) -> None:
        if press.placeholder is None or press.placeholder_text == text:
            return
        press.placeholder_text = text
        self._call_chat(self._chat.update_placeholder_text, press.placeholder, text)

    def _call_chat(self, method: Callable[..., Any], *args: Any) -> Any:
        try:
            return method(*args)
        except Exception:
            logger.exception("Chat pipeline call %s failed", getattr(method, "__name__", method))
            return None

    def _safe_close(self, transport: TransportSession) -> None:
        try:
            transport.close()
        except Exception as exc:  # pragma: no cover
            logger.debug("Transport close failed: %s", exc)

    def _safe_stop_capture(self) -> None:
        try:
            self._capture.stop(discard=True)
        except Exception as exc:  # pragma: no cover
            logger.debug("Capture stop failed: %s", exc)

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
