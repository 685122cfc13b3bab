"""Error taxonomy for the voice-command pipeline.

Exceptions cover capability and transport failures. Expected outcomes of a
dispatch (low confidence, missing entity, handler failure, unknown intent) are
carried as ``ErrorKind`` values on ``ActionResult`` instead.
"""

from __future__ import annotations

from enum import Enum


class AssistantError(RuntimeError):
    """Base class for pipeline failures."""


class UnsupportedError(AssistantError):
    """The speech or microphone source is not available on this device."""


class MicrophonePermissionError(AssistantError, PermissionError):
    """Microphone access was denied."""


class EmptyCaptureError(AssistantError):
    """Capture produced no usable audio."""


class TranscriptionError(AssistantError):
    """The transcription service failed, timed out, or returned nothing."""


class ClassificationProviderError(AssistantError):
    """The primary classifier could not be reached or returned an error."""


class SchemaValidationError(ClassificationProviderError):
    """The primary classifier answered with content that does not match the schema."""


class UnknownIntentError(AssistantError):
    """An intent has no registered handler."""


class SynthesisError(AssistantError):
    """Speech synthesis or playback failed."""


class ErrorKind(str, Enum):
    UNKNOWN_INTENT = "unknown_intent"
    MISSING_ENTITY = "missing_entity"
    LOW_CONFIDENCE = "low_confidence"
    ACTION_EXECUTION = "action_execution"
