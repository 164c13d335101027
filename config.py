"""Session tunables and a simple JSON-based config store."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path

BACKEND_WEBSOCKET = "websocket"
BACKEND_DASHSCOPE = "dashscope"


@dataclass
class SessionConfig:
    sample_rate: int = 16000
    channels: int = 1
    backlog_max_bytes: int = 512 * 1024
    # 200ms of 16kHz mono int16
    chunk_bytes: int = 6400
    finalize_timeout_s: float = 3.0
    reply_timeout_s: float = 30.0
    send_poll_interval_ms: int = 40
    max_flush_attempts: int = 5
    max_send_failures: int = 50

    @property
    def send_poll_interval_s(self) -> float:
        return self.send_poll_interval_ms / 1000.0

    @classmethod
    def from_dict(cls, data: dict) -> "SessionConfig":
        known = {f.name for f in fields(cls)}
        defaults = asdict(cls())
        values = {}
        for name, value in data.items():
            if name not in known:
                continue
            caster = type(defaults[name])
            try:
                values[name] = caster(value)
            except (TypeError, ValueError):
                continue
        return cls(**values)


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "holdtalk" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        self._set("api_key", key)

    def get_hotkey(self) -> str:
        data = self._read_all()
        return str(data.get("hotkey", "Key.alt_l"))

    def set_hotkey(self, hotkey: str) -> None:
        self._set("hotkey", hotkey)

    def get_cancel_key(self) -> str:
        data = self._read_all()
        return str(data.get("cancel_key", "Key.esc"))

    def get_backend(self) -> str:
        data = self._read_all()
        backend = str(data.get("backend", BACKEND_WEBSOCKET))
        if backend not in (BACKEND_WEBSOCKET, BACKEND_DASHSCOPE):
            return BACKEND_WEBSOCKET
        return backend

    def set_backend(self, backend: str) -> None:
        if backend not in (BACKEND_WEBSOCKET, BACKEND_DASHSCOPE):
            raise ValueError(f"unknown backend: {backend}")
        self._set("backend", backend)

    def get_transport_url(self) -> str:
        data = self._read_all()
        return str(data.get("transport_url", "ws://127.0.0.1:8000/api/v1/chat/voice"))

    def set_transport_url(self, url: str) -> None:
        self._set("transport_url", url)

    def get_reveal_delay_s(self) -> float:
        data = self._read_all()
        try:
            return max(0.0, float(data.get("reveal_delay_ms", 250)) / 1000.0)
        except (TypeError, ValueError):
            return 0.25

    def load_session_config(self) -> SessionConfig:
        data = self._read_all()
        overrides = data.get("session", {})
        if not isinstance(overrides, dict):
            return SessionConfig()
        return SessionConfig.from_dict(overrides)

    def _set(self, key: str, value: object) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
