"""Tests for SoundDeviceCaptureSource."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from capture import SoundDeviceCaptureSource, compute_level


def _block(n_samples: int = 1600, value: int = 0) -> np.ndarray:
    return np.full((n_samples, 1), value, dtype=np.int16)


# ---------------------------------------------------------------
# Start / stop
# ---------------------------------------------------------------

@patch("capture.sd")
def test_start_creates_int16_stream(mock_sd: MagicMock) -> None:
    mock_stream = MagicMock()
    mock_sd.InputStream.return_value = mock_stream

    source = SoundDeviceCaptureSource(sample_rate=16000, channels=1, chunk_ms=100)
    source.start()

    kwargs = mock_sd.InputStream.call_args.kwargs
    assert kwargs["samplerate"] == 16000
    assert kwargs["dtype"] == "int16"
    assert kwargs["blocksize"] == 1600
    mock_stream.start.assert_called_once()
    assert source.is_running

    source.stop()
    mock_stream.stop.assert_called_once()
    mock_stream.close.assert_called_once()
    assert not source.is_running


@patch("capture.sd")
def test_start_and_stop_are_idempotent(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.return_value = MagicMock()

    source = SoundDeviceCaptureSource()
    source.start()
    source.start()
    assert mock_sd.InputStream.call_count == 1

    assert source.stop() == b""
    assert source.stop() == b""


@patch("capture.sd")
def test_failed_stream_start_leaves_source_stopped(mock_sd: MagicMock) -> None:
    mock_stream = MagicMock()
    mock_stream.start.side_effect = OSError("device busy")
    mock_sd.InputStream.return_value = mock_stream

    source = SoundDeviceCaptureSource()
    with pytest.raises(OSError):
        source.start()
    assert not source.is_running
    mock_stream.close.assert_called_once()


def test_start_raises_without_sounddevice(monkeypatch) -> None:  # noqa: ANN001
    import capture as capture_mod
    monkeypatch.setattr(capture_mod, "sd", None)

    source = SoundDeviceCaptureSource()
    with pytest.raises(RuntimeError, match="sounddevice is not installed"):
        source.start()
    with pytest.raises(RuntimeError, match="sounddevice is not installed"):
        source.request_permission()


# ---------------------------------------------------------------
# Permission
# ---------------------------------------------------------------

@patch("capture.sd")
def test_permission_granted_is_cached(mock_sd: MagicMock) -> None:
    source = SoundDeviceCaptureSource()
    assert source.request_permission() is True
    assert source.request_permission() is True
    mock_sd.check_input_settings.assert_called_once_with(
        samplerate=16000, channels=1, dtype="int16"
    )


@patch("capture.sd")
def test_permission_denied_when_device_unusable(mock_sd: MagicMock) -> None:
    mock_sd.check_input_settings.side_effect = Exception("no input device")

    source = SoundDeviceCaptureSource()
    assert source.request_permission() is False


# ---------------------------------------------------------------
# Audio callback
# ---------------------------------------------------------------

@patch("capture.sd")
def test_callback_buffers_pcm_for_drain(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.return_value = MagicMock()
    levels: list[float] = []

    source = SoundDeviceCaptureSource(on_level=levels.append)
    source.start()
    source._on_audio(_block(1600, 100), frames=1600, time_info=None, status=None)
    source._on_audio(_block(800, 200), frames=800, time_info=None, status=None)

    data = source.drain()
    assert len(data) == (1600 + 800) * 2
    assert data[:2] == np.int16(100).tobytes()
    assert source.drain() == b""
    assert len(levels) == 2
    source.stop()


@patch("capture.sd")
def test_stop_returns_tail_unless_discarded(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.return_value = MagicMock()

    source = SoundDeviceCaptureSource()
    source.start()
    source._on_audio(_block(160), frames=160, time_info=None, status=None)
    assert len(source.stop()) == 320

    source.start()
    source._on_audio(_block(160), frames=160, time_info=None, status=None)
    assert source.stop(discard=True) == b""
    assert source.drain() == b""


@patch("capture.sd")
def test_full_buffer_drops_oldest_chunk(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.return_value = MagicMock()

    source = SoundDeviceCaptureSource(max_buffered_chunks=2)
    source.start()
    for value in (1, 2, 3):
        source._on_audio(_block(4, value), frames=4, time_info=None, status=None)

    assert source.dropped_chunks == 1
    assert source.drain() == _block(4, 2).tobytes() + _block(4, 3).tobytes()
    source.stop()


@patch("capture.sd")
def test_callback_after_stop_is_noop(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.return_value = MagicMock()

    source = SoundDeviceCaptureSource()
    source.start()
    source.stop()
    source._on_audio(_block(160), frames=160, time_info=None, status=None)
    assert source.drain() == b""


# ---------------------------------------------------------------
# Level meter
# ---------------------------------------------------------------

def test_level_of_silence_is_zero() -> None:
    assert compute_level(_block(1600, 0)) == 0.0
    assert compute_level(np.zeros(0, dtype=np.int16)) == 0.0


def test_level_is_bounded_and_monotonic() -> None:
    quiet = compute_level(_block(1600, 500))
    loud = compute_level(_block(1600, 20000))
    assert 0.0 < quiet < loud <= 1.0
