"""Core data models for the hold-to-talk session."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

MessageHandle = str


class SessionState(str, Enum):
    IDLE = "IDLE"
    PRE_CAPTURING = "PRE_CAPTURING"
    ACTIVE = "ACTIVE"
    FINALIZING = "FINALIZING"
    CANCELLING = "CANCELLING"


class TransportEventKind(str, Enum):
    PARTIAL_TRANSCRIPT = "partial_transcript"
    FINAL_TRANSCRIPT = "final_transcript"
    UPSTREAM_TASK_ID = "upstream_task_id"
    GENERIC_PAYLOAD = "generic_payload"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_EVENT_KINDS = frozenset(
    {TransportEventKind.COMPLETED, TransportEventKind.CANCELLED, TransportEventKind.ERROR}
)


@dataclass(frozen=True)
class AudioChunk:
    pcm16_bytes: bytes
    sequence: int
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0


@dataclass
class TransportEvent:
    kind: TransportEventKind
    text: str = ""
    task_id: str = ""
    payload: Optional[Dict[str, Any]] = None
    code: str = ""
    message: str = ""

    @classmethod
    def partial(cls, text: str) -> "TransportEvent":
        return cls(kind=TransportEventKind.PARTIAL_TRANSCRIPT, text=text)

    @classmethod
    def final(cls, text: str) -> "TransportEvent":
        return cls(kind=TransportEventKind.FINAL_TRANSCRIPT, text=text)

    @classmethod
    def upstream_task_id(cls, task_id: str) -> "TransportEvent":
        return cls(kind=TransportEventKind.UPSTREAM_TASK_ID, task_id=task_id)

    @classmethod
    def generic_payload(cls, payload: Dict[str, Any]) -> "TransportEvent":
        return cls(kind=TransportEventKind.GENERIC_PAYLOAD, payload=payload)

    @classmethod
    def completed(cls) -> "TransportEvent":
        return cls(kind=TransportEventKind.COMPLETED)

    @classmethod
    def cancelled(cls) -> "TransportEvent":
        return cls(kind=TransportEventKind.CANCELLED)

    @classmethod
    def error(cls, code: str, message: str) -> "TransportEvent":
        return cls(kind=TransportEventKind.ERROR, code=code, message=message)


@dataclass
class TranscriptState:
    text: str = ""
    is_final: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()

