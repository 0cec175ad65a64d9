"""Domain-specific exceptions for call orchestration.

These exceptions are safe to import from API layers without triggering heavy ML imports.
"""

from __future__ import annotations


class AssistantError(Exception):
    status_code: int = 500
    default_detail: str = "Assistant error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ConfigurationError(AssistantError):
    status_code = 503
    default_detail = "Required capability is not configured."


class CallNotFoundError(AssistantError):
    status_code = 404
    default_detail = "Call not found."


class TranscriptionError(AssistantError):
    status_code = 503
    default_detail = "Transcription failed."


class ClassificationParseError(AssistantError):
    """Model output could not be parsed into a classification."""

    status_code = 502
    default_detail = "Classifier output could not be parsed."


class GenerationError(AssistantError):
    status_code = 503
    default_detail = "LLM request failed."


class SynthesisError(AssistantError):
    status_code = 503
    default_detail = "Speech synthesis failed."


class TranscodeError(AssistantError):
    status_code = 503
    default_detail = "Audio transcoding failed."


class PersistenceError(AssistantError):
    status_code = 503
    default_detail = "Database operation failed."


class NotificationError(AssistantError):
    status_code = 502
    default_detail = "Notification delivery failed."
