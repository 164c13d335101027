"""Application entrypoint."""

from __future__ import annotations

import argparse
import logging
import os
import threading
from typing import List, Optional

from capture import SoundDeviceCaptureSource
from config import BACKEND_DASHSCOPE, BACKEND_WEBSOCKET, JsonConfigStore
from console_chat import ConsoleChatPipeline
from dashscope_transport import DashscopeTransport
from hotkey import HoldGestureAdapter
from interfaces import ConfigStore, TransportSession
from models import SessionState
from session import HoldToTalkSession
from transport import WebSocketTransport

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    level_name = os.getenv("HOLDTALK_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="holdtalk", description="Hold a key to talk to your agent.")
    parser.add_argument("--api-key", help="save the API key (DashScope) or chat session id (websocket backend)")
    parser.add_argument("--hotkey", help="save the hold key, pynput format e.g. Key.alt_l")
    parser.add_argument(
        "--backend",
        choices=[BACKEND_WEBSOCKET, BACKEND_DASHSCOPE],
        help="save which transcription backend to use",
    )
    parser.add_argument("--url", help="save the WebSocket backend URL")
    return parser


def apply_settings(store: JsonConfigStore, args: argparse.Namespace) -> None:
    if args.api_key is not None:
        store.set_api_key(args.api_key)
    if args.hotkey:
        store.set_hotkey(args.hotkey)
    if args.backend:
        store.set_backend(args.backend)
    if args.url:
        store.set_transport_url(args.url)


class App:
    def __init__(self, config_store: Optional[ConfigStore] = None) -> None:
        self.config_store: ConfigStore = config_store or JsonConfigStore()
        self.session_config = self.config_store.load_session_config()
        self.chat = ConsoleChatPipeline()
        self.capture = SoundDeviceCaptureSource(
            sample_rate=self.session_config.sample_rate,
            channels=self.session_config.channels,
        )
        self.session = HoldToTalkSession(
            capture=self.capture,
            transport_factory=self._create_transport,
            chat=self.chat,
            config=self.session_config,
            on_state_change=self._on_state_change,
            on_error=self._on_error,
            is_agent_busy=self.chat.is_busy,
        )
        self.gesture = HoldGestureAdapter(
            self.session,
            hotkey_name=self.config_store.get_hotkey(),
            cancel_key_name=self.config_store.get_cancel_key(),
            reveal_delay_s=self.config_store.get_reveal_delay_s(),
        )
        self._stopped = threading.Event()

    def _create_transport(self) -> TransportSession:
        # Settings are re-read per press so a saved key applies without restart
        api_key = self.config_store.get_api_key()
        if self.config_store.get_backend() == BACKEND_DASHSCOPE:
            return DashscopeTransport(api_key=api_key, sample_rate=self.session_config.sample_rate)
        return WebSocketTransport(
            url=self.config_store.get_transport_url(),
            api_key=api_key,
            sample_rate=self.session_config.sample_rate,
            channels=self.session_config.channels,
        )

    # ------------------------------------------------------------------
    # Callbacks (called from session worker threads)
    # ------------------------------------------------------------------

    def _on_state_change(self, from_state: SessionState, to_state: SessionState) -> None:
        logger.debug("Session %s -> %s", from_state.value, to_state.value)

    def _on_error(self, code: str, message: str) -> None:
        logger.error("%s: %s", code, message)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        try:
            self.gesture.start()
        except Exception as exc:
            logger.error("Hotkey disabled: %s", exc)
            return 1
        try:
            self._stopped.wait()
        except KeyboardInterrupt:
            pass
        finally:
            self.quit()
        return 0

    def quit(self) -> None:
        self.gesture.stop()
        self.session.force_teardown()
        self._stopped.set()


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    store = JsonConfigStore()
    apply_settings(store, args)
    app = App(config_store=store)
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
