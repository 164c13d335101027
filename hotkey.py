"""Global hold-to-talk gesture adapter based on pynput."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from session import HoldToTalkSession

try:
    from pynput import keyboard
except Exception:  # pragma: no cover
    keyboard = None  # type: ignore

logger = logging.getLogger(__name__)


class HoldGestureAdapter:
    """Turns a held key into session calls.

    Pressing the hotkey begins a press and arms a reveal timer. Releasing it
    before the timer fires is treated as an accidental tap and aborts the
    pre-capture. The cancel key toggles the cancel intent while the hotkey
    is held.
    """

    def __init__(
        self,
        session: HoldToTalkSession,
        hotkey_name: str = "Key.alt_l",
        cancel_key_name: str = "Key.esc",
        reveal_delay_s: float = 0.25,
    ) -> None:
        self._session = session
        self._hotkey_name = hotkey_name
        self._cancel_key_name = cancel_key_name
        self._reveal_delay_s = reveal_delay_s
        self._listener: Optional[object] = None
        self._timer: Optional[threading.Timer] = None
        self._pressed = False
        self._revealed = False
        self._cancel_intent = False
        self._begin_thread: Optional[threading.Thread] = None
        self._begin_generation = 0
        self._lock = threading.Lock()

    def start(self) -> None:
        if keyboard is None:
            raise RuntimeError("pynput is not installed")
        self._listener = keyboard.Listener(on_press=self.handle_press, on_release=self.handle_release)
        self._listener.start()
        logger.info("Hold %s to talk, %s to cancel", self._hotkey_name, self._cancel_key_name)

    def stop(self) -> None:
        self._cancel_timer()
        listener = self._listener
        if listener is not None:
            listener.stop()
            self._listener = None

    def handle_press(self, key: object) -> None:
        name = str(key)
        if name == self._cancel_key_name:
            with self._lock:
                if not self._pressed:
                    return
                self._cancel_intent = not self._cancel_intent
                intent = self._cancel_intent
            self._session.update_drag_cancel_intent(intent)
            return
        if name != self._hotkey_name:
            return
        with self._lock:
            if self._pressed:
                return
            self._pressed = True
            self._revealed = False
            self._cancel_intent = False
            timer = threading.Timer(self._reveal_delay_s, self._on_reveal_timer)
            timer.daemon = True
            self._timer = timer
            # begin_press opens the transport, which must not stall the listener
            self._begin_generation = self._session.generation
            self._begin_thread = threading.Thread(target=self._session.begin_press, daemon=True)
        timer.start()
        self._begin_thread.start()

    def handle_release(self, key: object) -> None:
        if str(key) != self._hotkey_name:
            return
        with self._lock:
            if not self._pressed:
                return
            self._pressed = False
            revealed = self._revealed
            is_cancel = self._cancel_intent
            begin_thread = self._begin_thread
            begin_generation = self._begin_generation
        self._cancel_timer()
        threading.Thread(
            target=self._finish_press,
            args=(begin_thread, begin_generation, revealed, is_cancel),
            daemon=True,
        ).start()

    def _finish_press(
        self,
        begin_thread: Optional[threading.Thread],
        begin_generation: int,
        revealed: bool,
        is_cancel: bool,
    ) -> None:
        # Wait until the press is registered so a fast release cannot overtake it
        if begin_thread is not None:
            while begin_thread.is_alive() and self._session.generation == begin_generation:
                begin_thread.join(timeout=0.005)
        if not revealed:
            self._session.abort_pre_capture()
            return
        # release() blocks until the final transcript arrives
        self._session.release(is_cancel)

    def _on_reveal_timer(self) -> None:
        with self._lock:
            if not self._pressed:
                return
            self._revealed = True
        self._session.reveal()

    def _cancel_timer(self) -> None:
        with self._lock:
            timer = self._timer
            self._timer = None
        if timer is not None:
            timer.cancel()
