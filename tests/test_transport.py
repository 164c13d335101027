"""Tests for WebSocketTransport and backend message parsing."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from errors import (
    AUTH_FAILED,
    NETWORK_ERROR,
    TRANSPORT_OPEN_FAILED,
    TransportOpenFailed,
    TransportReceiveFailed,
    TransportSendFailed,
)
from models import TransportEventKind
from transport import WebSocketTransport, build_url, parse_event


# ---------------------------------------------------------------
# parse_event: chat voice backend messages
# ---------------------------------------------------------------

def test_asr_result_follows_is_final_flag() -> None:
    partial = parse_event('{"type": "asr_result", "text": "hel", "is_final": false}')
    final = parse_event('{"type": "asr_result", "text": "hi", "is_final": true}')
    unflagged = parse_event('{"type": "asr_result", "text": "h"}')

    assert partial.kind == TransportEventKind.PARTIAL_TRANSCRIPT
    assert partial.text == "hel"
    assert final.kind == TransportEventKind.FINAL_TRANSCRIPT
    assert final.text == "hi"
    assert unflagged.kind == TransportEventKind.PARTIAL_TRANSCRIPT


def test_asr_complete_is_final_transcript() -> None:
    event = parse_event('{"type": "asr_complete", "text": "remind me at 5pm", "message": "ok"}')
    assert event.kind == TransportEventKind.FINAL_TRANSCRIPT
    assert event.text == "remind me at 5pm"


def test_backend_lifecycle_events() -> None:
    assert parse_event('{"type": "done", "message": "bye"}').kind == TransportEventKind.COMPLETED
    assert parse_event('{"type": "cancelled"}').kind == TransportEventKind.CANCELLED
    assert parse_event('{"type": "stopped", "message": "idle"}').kind == TransportEventKind.CANCELLED


@pytest.mark.parametrize("code, expected", [(401, "401"), (500.0, "500"), (" 429 ", "429"), (None, "")])
def test_error_codes_are_normalized(code: object, expected: str) -> None:
    event = parse_event(json.dumps({"type": "error", "code": code, "message": "nope"}))
    assert event.kind == TransportEventKind.ERROR
    assert (event.code, event.message) == (expected, "nope")


def test_error_without_message_gets_default() -> None:
    assert parse_event('{"type": "error"}').message == "unknown error"


def test_parse_task_id() -> None:
    event = parse_event('{"type": "task_id", "task_id": "t-1"}')
    assert event.kind == TransportEventKind.UPSTREAM_TASK_ID
    assert event.task_id == "t-1"

    blank = parse_event('{"type": "task_id", "task_id": "  "}')
    assert blank.kind == TransportEventKind.GENERIC_PAYLOAD


def test_assistant_messages_become_generic_payloads() -> None:
    event = parse_event('{"role": "assistant", "type": "markdown", "content": "**hi**"}')
    assert event.kind == TransportEventKind.GENERIC_PAYLOAD
    assert event.payload == {"role": "assistant", "type": "markdown", "content": "**hi**"}
    assert parse_event('{"type": "processing"}').kind == TransportEventKind.GENERIC_PAYLOAD


def test_utf8_binary_frames_are_parsed() -> None:
    event = parse_event('{"type": "asr_result", "text": "你好", "is_final": true}'.encode("utf-8"))
    assert event.kind == TransportEventKind.FINAL_TRANSCRIPT
    assert event.text == "你好"


# ---------------------------------------------------------------
# parse_event: generic aliases
# ---------------------------------------------------------------

def test_generic_transcript_aliases() -> None:
    partial = parse_event(json.dumps({"type": "partial", "text": "hel"}))
    final = parse_event(json.dumps({"type": "final_transcript", "result": {"text": "hello"}}))

    assert partial.kind == TransportEventKind.PARTIAL_TRANSCRIPT
    assert final.kind == TransportEventKind.FINAL_TRANSCRIPT
    assert final.text == "hello"
    assert parse_event('{"type": "completed"}').kind == TransportEventKind.COMPLETED
    assert parse_event('{"type": "canceled"}').kind == TransportEventKind.CANCELLED


def test_parse_utterances_are_joined() -> None:
    event = parse_event(
        json.dumps({"type": "final", "utterances": [{"text": "你好"}, {"text": " 世界 "}, "x"]})
    )
    assert event.text == "你好世界"


def test_unparseable_messages_are_skipped() -> None:
    assert parse_event(b"\xff\xfe\x00") is None
    assert parse_event("{not json") is None
    assert parse_event("[1, 2]") is None


# ---------------------------------------------------------------
# build_url
# ---------------------------------------------------------------

def test_build_url_maps_scheme_and_adds_session() -> None:
    assert build_url("https://api.example/api/v1/chat/voice", "s-1") == (
        "wss://api.example/api/v1/chat/voice?session_id=s-1"
    )
    assert build_url("http://h/v?contact_id=c", "s") == "ws://h/v?contact_id=c&session_id=s"
    assert build_url("ws://h/v?session_id=keep", "other") == "ws://h/v?session_id=keep"
    assert build_url("ws://h/v") == "ws://h/v"


# ---------------------------------------------------------------
# WebSocketTransport
# ---------------------------------------------------------------

@patch("transport.ws_connect")
def test_start_connects_with_session_id(mock_connect: MagicMock) -> None:
    ws = MagicMock()
    mock_connect.return_value = ws

    WebSocketTransport("http://backend/api/v1/chat/voice", api_key="sess-1").start()

    assert mock_connect.call_args.args[0] == "ws://backend/api/v1/chat/voice?session_id=sess-1"
    assert mock_connect.call_args.kwargs["additional_headers"] == {"X-Session-Id": "sess-1"}
    ws.send.assert_not_called()


@patch("transport.ws_connect")
def test_start_without_key_sends_no_session_header(mock_connect: MagicMock) -> None:
    mock_connect.return_value = MagicMock()
    WebSocketTransport("ws://backend/voice").start()
    assert mock_connect.call_args.kwargs["additional_headers"] == {}


@pytest.mark.parametrize(
    "message, code",
    [
        ("server rejected WebSocket connection: HTTP 401", AUTH_FAILED),
        ("timed out during opening handshake", NETWORK_ERROR),
        ("bad gateway", TRANSPORT_OPEN_FAILED),
    ],
)
@patch("transport.ws_connect")
def test_connect_failures_are_classified(mock_connect: MagicMock, message: str, code: str) -> None:
    mock_connect.side_effect = OSError(message)

    with pytest.raises(TransportOpenFailed) as info:
        WebSocketTransport("ws://backend/voice").start()
    assert info.value.code == code


def test_start_raises_without_websockets(monkeypatch) -> None:  # noqa: ANN001
    import transport as transport_mod
    monkeypatch.setattr(transport_mod, "ws_connect", None)

    with pytest.raises(TransportOpenFailed, match="websockets is not installed"):
        WebSocketTransport("ws://backend/voice").start()


@patch("transport.ws_connect")
def test_audio_and_control_messages(mock_connect: MagicMock) -> None:
    ws = MagicMock()
    mock_connect.return_value = ws
    transport = WebSocketTransport("ws://backend/voice")
    transport.start()

    transport.send_audio_chunk(bytearray(b"\x01\x02"))
    assert ws.send.call_args.args[0] == b"\x01\x02"

    transport.send_audio_done(" hello ", False)
    assert json.loads(ws.send.call_args.args[0]) == {
        "action": "audio_record_done",
        "asr_result": {"text": "hello", "is_final": False},
    }

    transport.send_audio_done("   ", True)
    assert json.loads(ws.send.call_args.args[0]) == {"action": "audio_record_done"}

    transport.send_cancel()
    assert json.loads(ws.send.call_args.args[0]) == {"action": "cancel"}


@patch("transport.ws_connect")
def test_empty_audio_chunk_is_not_sent(mock_connect: MagicMock) -> None:
    ws = MagicMock()
    mock_connect.return_value = ws
    transport = WebSocketTransport("ws://backend/voice")
    transport.start()

    transport.send_audio_chunk(b"")
    ws.send.assert_not_called()


@patch("transport.ws_connect")
def test_send_failure_raises_send_failed(mock_connect: MagicMock) -> None:
    ws = MagicMock()
    mock_connect.return_value = ws
    transport = WebSocketTransport("ws://backend/voice")
    transport.start()

    ws.send.side_effect = ConnectionError("reset")
    with pytest.raises(TransportSendFailed):
        transport.send_audio_chunk(b"\x00\x00")


@patch("transport.ws_connect")
def test_receive_skips_unparseable_frames(mock_connect: MagicMock) -> None:
    ws = MagicMock()
    ws.recv.side_effect = [b"\xff", "garbage", '{"type": "asr_result", "text": "hi"}']
    mock_connect.return_value = ws
    transport = WebSocketTransport("ws://backend/voice")
    transport.start()

    event = transport.receive_event()
    assert event.kind == TransportEventKind.PARTIAL_TRANSCRIPT
    assert event.text == "hi"


@patch("transport.ws_connect")
def test_receive_after_close_raises(mock_connect: MagicMock) -> None:
    ws = MagicMock()
    mock_connect.return_value = ws
    transport = WebSocketTransport("ws://backend/voice")
    transport.start()

    transport.close()
    transport.close()
    ws.close.assert_called_once()

    with pytest.raises(TransportReceiveFailed):
        transport.receive_event()
    with pytest.raises(TransportSendFailed):
        transport.send_audio_chunk(b"\x00")


@patch("transport.ws_connect")
def test_connection_drop_raises_receive_failed(mock_connect: MagicMock) -> None:
    ws = MagicMock()
    ws.recv.side_effect = ConnectionError("connection closed")
    mock_connect.return_value = ws
    transport = WebSocketTransport("ws://backend/voice")
    transport.start()

    with pytest.raises(TransportReceiveFailed, match="connection closed"):
        transport.receive_event()
