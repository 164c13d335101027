"""Protocol interfaces used by HoldToTalkSession."""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from config import SessionConfig
from models import MessageHandle, TransportEvent


class AudioCaptureSource(Protocol):
    @property
    def level(self) -> float: ...

    def request_permission(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self, discard: bool = False) -> bytes: ...

    def drain(self) -> bytes: ...


class TransportSession(Protocol):
    def start(self) -> None: ...

    def send_audio_chunk(self, data: bytes) -> None: ...

    def send_audio_done(self, fallback_text: str, is_final: bool) -> None: ...

    def send_cancel(self) -> None: ...

    def receive_event(self) -> TransportEvent: ...

    def close(self) -> None: ...


class ChatPipelineAdapter(Protocol):
    def create_placeholder_message(self) -> Optional[MessageHandle]: ...

    def update_placeholder_text(self, handle: MessageHandle, text: str) -> None: ...

    def remove_placeholder(self, handle: MessageHandle) -> None: ...

    def begin_agent_message(self) -> Optional[MessageHandle]: ...

    def apply_agent_output(self, handle: MessageHandle, payload: Dict[str, Any]) -> None: ...

    def end_agent_message(self, handle: MessageHandle) -> None: ...

    def report_error(self, handle: Optional[MessageHandle], message: str) -> None: ...


class ConfigStore(Protocol):
    def get_api_key(self) -> str: ...

    def set_api_key(self, key: str) -> None: ...

    def get_hotkey(self) -> str: ...

    def set_hotkey(self, hotkey: str) -> None: ...

    def get_cancel_key(self) -> str: ...

    def get_backend(self) -> str: ...

    def get_transport_url(self) -> str: ...

    def get_reveal_delay_s(self) -> float: ...

    def load_session_config(self) -> SessionConfig: ...
