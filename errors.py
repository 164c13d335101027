"""Shared error codes, user-facing messages and transport exceptions."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
CAPTURE_FAILED = "CAPTURE_FAILED"
TRANSPORT_OPEN_FAILED = "TRANSPORT_OPEN_FAILED"
TRANSPORT_SEND_FAILED = "TRANSPORT_SEND_FAILED"
TRANSPORT_RECEIVE_FAILED = "TRANSPORT_RECEIVE_FAILED"
BACKEND_ERROR = "BACKEND_ERROR"
FINALIZE_TIMEOUT = "FINALIZE_TIMEOUT"
NETWORK_ERROR = "NETWORK_ERROR"
AUTH_FAILED = "AUTH_FAILED"
ASR_PROTOCOL_ERROR = "ASR_PROTOCOL_ERROR"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone permission is required.",
    CAPTURE_FAILED: "Microphone could not be started.",
    TRANSPORT_OPEN_FAILED: "Could not connect to the transcription service.",
    TRANSPORT_SEND_FAILED: "Audio upload kept failing.",
    TRANSPORT_RECEIVE_FAILED: "Connection to the transcription service was lost.",
    BACKEND_ERROR: "The transcription service reported an error.",
    FINALIZE_TIMEOUT: "Final transcript did not arrive in time.",
    NETWORK_ERROR: "Network failed, please retry.",
    AUTH_FAILED: "API key is invalid.",
    ASR_PROTOCOL_ERROR: "ASR response format is invalid.",
}


def classify_error(message: str, default: str = ASR_PROTOCOL_ERROR) -> str:
    """Map an SDK/network error message to an error code."""
    low = message.lower()
    if "401" in low or "403" in low or "auth" in low or "api key" in low:
        return AUTH_FAILED
    if "timeout" in low or "timed out" in low or "network" in low or "connection" in low:
        return NETWORK_ERROR
    return default


class TransportError(Exception):
    code = ASR_PROTOCOL_ERROR

    def __init__(self, message: str = "", code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class TransportOpenFailed(TransportError):
    code = TRANSPORT_OPEN_FAILED


class TransportSendFailed(TransportError):
    code = TRANSPORT_SEND_FAILED


class TransportReceiveFailed(TransportError):
    code = TRANSPORT_RECEIVE_FAILED
