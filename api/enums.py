"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class VideoStatus(str, Enum):
    """Lifecycle status of a video record."""

    UPLOADING = "uploading"
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class ReprocessPolicy(str, Enum):
    """What the worker does with a job for a record that is already past "queued"."""

    REPROCESS = "reprocess"  # Treat as a fresh attempt (default)
    SKIP = "skip"  # Acknowledge without work when processing/ready/failed


class JobOutcome(str, Enum):
    """Result of a single worker invocation."""

    PROCESSED = "processed"
    SKIPPED = "skipped"
