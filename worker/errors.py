"""
Error taxonomy for the transcode pipeline.

Every failure a job can hit is a TranscodeError subclass. The orchestrator
catches these at the job boundary, logs them, and moves on to the next job.
"""

from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH


def truncate_error(message: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> str:
    """Truncate an error message (e.g. ffmpeg stderr) for logs and alerts.

    Keeps the tail, since encoder output puts the actual failure last.
    """
    if not message:
        return ""
    message = message.strip()
    if len(message) <= max_length:
        return message
    return "..." + message[-(max_length - 3):]


class TranscodeError(Exception):
    """Base class for job failures."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class UnstableSourceError(TranscodeError):
    """The source never stopped changing, or vanished while being checked."""


class InvalidSourceError(TranscodeError):
    """ffprobe could not find a usable video stream or duration."""


class EncodeError(TranscodeError):
    """The encoder exited non-zero or timed out."""

    def __init__(self, reason: str, tier: Optional[str] = None, stderr: str = ""):
        super().__init__(reason)
        self.tier = tier
        self.stderr = truncate_error(stderr)


class RenditionValidationError(TranscodeError):
    """Encoder output references segments that are missing or empty."""


class OwnerNotFoundError(TranscodeError):
    """No owning row references the file."""


class PersistenceError(TranscodeError):
    """The pointer could not be written to the owning row."""
