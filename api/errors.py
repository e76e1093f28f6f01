"""
Error taxonomy for the transcoding pipeline.

Every error raised by the dispatcher and the worker derives from PipelineError,
which carries the HTTP status code the API layers answer with. Failure messages
recorded on video records go through truncate_error so a runaway ffmpeg log
never bloats the row.
"""

import logging
from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for pipeline errors."""

    status_code = 500

    def __init__(self, message: str, video_id: Optional[str] = None):
        self.message = message
        self.video_id = video_id
        super().__init__(message)


class BadRequest(PipelineError):
    """Malformed input (e.g. a job payload missing required fields). Never retried usefully."""

    status_code = 400


class Unauthorized(PipelineError):
    """Credential check failed."""

    status_code = 401


class NotFound(PipelineError):
    """The requested video record does not exist."""

    status_code = 404


class InvalidState(PipelineError):
    """The record's current status or fields violate the operation's precondition."""

    status_code = 409


class DispatchFailure(PipelineError):
    """
    Publishing the job failed after the record was already merged to "queued".

    The record is left in a recoverable stuck state; re-invoking
    request_processing publishes again.
    """

    status_code = 502


class QueueUnavailable(PipelineError):
    """No job queue is configured, so nothing can be dispatched."""

    status_code = 503


class ProcessingFailure(PipelineError):
    """Base for failures that transition a record to "failed"."""

    status_code = 500
    stage = "processing"


class DownloadFailure(ProcessingFailure):
    stage = "download"


class TranscodeFailure(ProcessingFailure):
    stage = "transcode"


class UploadFailure(ProcessingFailure):
    stage = "upload"


def truncate_error(message: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """
    Truncate an error message to max_length characters.

    Truncated messages end with "..." and stay within max_length.
    """
    if message is None:
        return None
    message = message.strip()
    if len(message) <= max_length:
        return message
    if max_length <= 3:
        return message[:max_length]
    return message[: max_length - 3] + "..."


def describe_exception(exc: BaseException) -> str:
    """
    Human-readable message for an arbitrary exception.

    Falls back to the exception type name when str(exc) is empty
    (e.g. a bare asyncio.TimeoutError).
    """
    text = str(exc).strip()
    if not text:
        return type(exc).__name__
    return text
