"""
Error taxonomy for the assistant core.

Every error carries a short user-facing message; routes and the chat socket map
exceptions through `user_message` / `error_to_http` so raw tracebacks never reach
the user.
"""
from __future__ import annotations

from typing import Callable


class AssistantError(Exception):
    user_text = "Something went wrong. Please try again."
    status_code = 500

    def __init__(self, message: str = "", *, operation: str | None = None, domain: str | None = None, session_id: str | None = None):
        super().__init__(message or self.user_text)
        self.operation = operation
        self.domain = domain
        self.session_id = session_id

    def with_context(self, *, operation: str | None = None, domain: str | None = None, session_id: str | None = None):
        if operation and not self.operation:
            self.operation = operation
        if domain and not self.domain:
            self.domain = domain
        if session_id and not self.session_id:
            self.session_id = session_id
        return self

    def context_label(self) -> str:
        parts = []
        for k in ("operation", "domain", "session_id"):
            v = getattr(self, k, None)
            if v:
                parts.append(f"{k}={v}")
        return " ".join(parts)


class EngineNotReady(AssistantError):
    user_text = "The model is not loaded yet. Please wait for setup to finish."
    status_code = 503


class ModelFileMissing(AssistantError):
    user_text = "Model file not found. Please download the model again."
    status_code = 503

    def __init__(self, path: str, **kwargs):
        super().__init__(f"Model file not found at: {path}", **kwargs)
        self.path = path


class EngineInitFailed(AssistantError):
    user_text = "Failed to load the model. Please restart the app."
    status_code = 503


class GenerationFailed(AssistantError):
    user_text = "Failed to get response. Please try again."

    def __init__(self, message: str = "", *, partial_text: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.partial_text = partial_text


class NoSpeechDetected(AssistantError):
    user_text = "No clear speech detected. Please speak clearly and try again."
    status_code = 422


class AudioTooSmall(AssistantError):
    user_text = "Recording was too short. Please record again."
    status_code = 422


class AudioTooLarge(AssistantError):
    user_text = "Recording is too long. Please record a shorter message."
    status_code = 422


class AudioFileMissing(AssistantError):
    user_text = "Recording could not be found. Please record again."
    status_code = 422


class TranscriptionFailed(AssistantError):
    user_text = "Failed to convert speech to text. Please try again."


class TranscriptionTimeout(TranscriptionFailed):
    user_text = "Speech recognition took too long. Please try a shorter recording."
    status_code = 504


class StorageError(AssistantError):
    user_text = "Could not save your chat history."


class SessionNotFound(AssistantError):
    user_text = "Chat not found."
    status_code = 404


class BusyError(AssistantError):
    user_text = "Please wait for the current response to finish."
    status_code = 409


def _is_context_overflow(msg: str) -> bool:
    lower = msg.lower()
    return "context" in lower and ("exceed" in lower or "too long" in lower or "overflow" in lower)


# (predicate, status_code, detail). First match wins; only used for non-taxonomy errors.
FOREIGN_ERROR_RULES: list[tuple[Callable[[str], bool], int, str]] = [
    (_is_context_overflow, 413, "The conversation is too long. Please start a new chat."),
]


def user_message(exc: BaseException) -> str:
    if isinstance(exc, AssistantError):
        return exc.user_text
    msg = str(exc)
    for predicate, _status, detail in FOREIGN_ERROR_RULES:
        if predicate(msg):
            return detail
    return AssistantError.user_text


def error_to_http(exc: BaseException) -> tuple[int, str]:
    if isinstance(exc, AssistantError):
        return exc.status_code, exc.user_text
    if isinstance(exc, ValueError):
        return 400, str(exc) or "Invalid request."
    msg = str(exc)
    for predicate, status_code, detail in FOREIGN_ERROR_RULES:
        if predicate(msg):
            return status_code, detail
    return 500, AssistantError.user_text
