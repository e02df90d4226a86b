"""Exceptions raised across voicetoggle.

Pre-flight errors (busy lock, missing binaries, missing credentials) abort
an invocation before the session file is touched. Pipeline and
transcription errors are reported and the invocation still cleans up.
"""

from __future__ import annotations


class VoiceToggleError(Exception):
    """Base exception for all voicetoggle errors."""


class BusyError(VoiceToggleError):
    """Another toggle invocation holds the session lock."""


class MissingDependencyError(VoiceToggleError):
    """A required external command is not installed."""

    def __init__(self, command: str) -> None:
        super().__init__(f"command {command} not found")
        self.command = command


class MissingCredentialError(VoiceToggleError):
    """Neither transcription credential is configured."""


class SessionCorruptError(VoiceToggleError):
    """The session file exists but cannot be read back."""


# Pipeline
class PipelineError(VoiceToggleError):
    """Base exception for recording pipeline failures."""


class CaptureError(PipelineError):
    """The capture process could not be started."""


class ProcessingError(PipelineError):
    """The audio processor failed or produced no usable audio."""


# Transcription
class TranscriptionFailedError(VoiceToggleError):
    """The backend request failed or returned an unusable payload."""
