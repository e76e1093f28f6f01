"""
Video Lifecycle State Machine - the transition contract shared by the
dispatcher and the transcode worker.

State Transition Diagram:
    UPLOADING ──> QUEUED ──> PROCESSING ──> READY
                    ^             │
                    │             v
                    └──────── FAILED   (explicit re-request)

No other edges exist. Writing the same status again (e.g. re-publishing a job
for a record that is already QUEUED) is not a transition and is always allowed.

Redelivery policy:
    The job queue delivers at least once, so the worker may receive a job for a
    record that is already PROCESSING, READY or FAILED. Under the "reprocess"
    policy these records re-enter PROCESSING as a fresh attempt; under "skip"
    they are acknowledged without work. Message content alone cannot tell a
    queue redelivery from a deliberate re-queue, so the choice is configuration.

Usage:
    from api.video_state import video_state_machine

    video_state_machine.validate_transition(record.status, VideoStatus.QUEUED)

Note: State checks are point-in-time and advisory. Concurrent deliveries of the
same job may interleave their merges (last writer wins per field).
"""

import logging
from typing import Dict, FrozenSet, Optional, Union

from api.enums import ReprocessPolicy, VideoStatus
from api.errors import InvalidState

logger = logging.getLogger(__name__)

StatusLike = Union[VideoStatus, str]

# Authoritative edge table
TRANSITIONS: Dict[VideoStatus, FrozenSet[VideoStatus]] = {
    VideoStatus.UPLOADING: frozenset({VideoStatus.QUEUED}),
    VideoStatus.QUEUED: frozenset({VideoStatus.PROCESSING}),
    VideoStatus.PROCESSING: frozenset({VideoStatus.READY, VideoStatus.FAILED}),
    VideoStatus.READY: frozenset(),
    VideoStatus.FAILED: frozenset({VideoStatus.QUEUED}),
}

# Statuses from which a job may be (re-)queued by the dispatcher
QUEUEABLE_STATUSES: FrozenSet[VideoStatus] = frozenset({VideoStatus.UPLOADING, VideoStatus.FAILED})

# A finalize notification for a record in one of these states is a duplicate
FINALIZE_DUPLICATE_STATUSES: FrozenSet[VideoStatus] = frozenset(
    {VideoStatus.QUEUED, VideoStatus.PROCESSING, VideoStatus.READY}
)

# Extra entries into PROCESSING admitted only under the "reprocess" policy
REDELIVERY_SOURCES: FrozenSet[VideoStatus] = frozenset(
    {VideoStatus.PROCESSING, VideoStatus.READY, VideoStatus.FAILED}
)


def _coerce(status: Optional[StatusLike]) -> VideoStatus:
    """Convert a stored status string into a VideoStatus."""
    if isinstance(status, VideoStatus):
        return status
    try:
        return VideoStatus(status)
    except ValueError:
        logger.error(f"Unknown video status in record: {status!r}")
        raise InvalidState(f"Unknown video status: {status!r}")


class VideoStateMachine:
    """
    Stateless validator for video status transitions.

    Thread Safety:
        This class holds no state. All methods are pure functions.
    """

    def can_transition(self, current: StatusLike, target: StatusLike) -> bool:
        """Check whether current -> target is an edge (or a same-status write)."""
        current = _coerce(current)
        target = _coerce(target)
        if current == target:
            return True
        return target in TRANSITIONS[current]

    def validate_transition(
        self, current: StatusLike, target: StatusLike, video_id: Optional[str] = None
    ) -> VideoStatus:
        """
        Validate current -> target and return the target status.

        Raises:
            InvalidState: If the edge is not in the transition table
        """
        if not self.can_transition(current, target):
            current = _coerce(current)
            target = _coerce(target)
            raise InvalidState(
                f"Cannot move video from '{current.value}' to '{target.value}'",
                video_id=video_id,
            )
        return _coerce(target)

    def can_request_processing(self, current: StatusLike) -> bool:
        """
        Check whether the dispatcher may queue a job for a record.

        QUEUED is accepted as a re-publish of a possibly stuck job.
        """
        current = _coerce(current)
        return current in QUEUEABLE_STATUSES or current == VideoStatus.QUEUED

    def is_duplicate_finalize(self, current: StatusLike) -> bool:
        """Check whether a finalize notification for a record in this state is a duplicate."""
        return _coerce(current) in FINALIZE_DUPLICATE_STATUSES

    def processing_entry_allowed(self, current: StatusLike, policy: ReprocessPolicy) -> bool:
        """
        Check whether the worker may start an attempt for a record in this state.

        QUEUED -> PROCESSING is the regular edge. The redelivery sources are
        admitted only under the REPROCESS policy. UPLOADING never is: a record
        that was never queued has no legitimate job in flight.
        """
        current = _coerce(current)
        if current == VideoStatus.QUEUED:
            return True
        if current in REDELIVERY_SOURCES:
            return policy == ReprocessPolicy.REPROCESS
        return False


# Module-level instance for convenience (stateless)
video_state_machine = VideoStateMachine()
