"""Chat pipeline that renders voice messages and agent replies to a terminal."""

from __future__ import annotations

import sys
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, TextIO

from models import MessageHandle

_TEXT_KEYS = ("markdown", "text", "content", "delta")


@dataclass
class _Message:
    role: str
    text: str = ""
    open: bool = True


def payload_text(payload: Dict[str, Any]) -> str:
    """Pick the renderable text out of an agent payload, if any."""
    for key in _TEXT_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    data = payload.get("data")
    if isinstance(data, dict):
        return payload_text(data)
    return ""


class ConsoleChatPipeline:
    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream or sys.stdout
        self._messages: Dict[MessageHandle, _Message] = {}
        self._lock = threading.Lock()

    def is_busy(self) -> bool:
        """True while an agent reply is still streaming in."""
        with self._lock:
            return any(m.role == "agent" and m.open for m in self._messages.values())

    def text_of(self, handle: MessageHandle) -> Optional[str]:
        with self._lock:
            message = self._messages.get(handle)
            return None if message is None else message.text

    def create_placeholder_message(self) -> Optional[MessageHandle]:
        handle = uuid.uuid4().hex
        with self._lock:
            self._messages[handle] = _Message(role="user")
        self._print("you> ...")
        return handle

    def update_placeholder_text(self, handle: MessageHandle, text: str) -> None:
        with self._lock:
            message = self._messages.get(handle)
            if message is None or message.text == text:
                return
            message.text = text
        self._print(f"you> {text}")

    def remove_placeholder(self, handle: MessageHandle) -> None:
        with self._lock:
            message = self._messages.pop(handle, None)
        if message is not None:
            self._print("you> (discarded)")

    def begin_agent_message(self) -> Optional[MessageHandle]:
        handle = uuid.uuid4().hex
        with self._lock:
            self._messages[handle] = _Message(role="agent")
        return handle

    def apply_agent_output(self, handle: MessageHandle, payload: Dict[str, Any]) -> None:
        if payload.get("type") == "task_id":
            self._print(f"[task {payload.get('task_id', '')}]")
            return
        text = payload_text(payload)
        if not text:
            return
        with self._lock:
            message = self._messages.get(handle)
            if message is None or not message.open:
                return
            message.text += text
        self._print(f"agent> {text}")

    def end_agent_message(self, handle: MessageHandle) -> None:
        with self._lock:
            message = self._messages.get(handle)
            if message is None or not message.open:
                return
            message.open = False

    def report_error(self, handle: Optional[MessageHandle], message: str) -> None:
        self._print(f"error> {message}")
        if handle is not None:
            self.end_agent_message(handle)

    def _print(self, line: str) -> None:
        print(line, file=self._stream, flush=True)
