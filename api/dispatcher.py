"""
Job Dispatcher - turns "this upload is ready" into exactly one queued job.

Two triggers share one code path (_queue):
- request_processing: explicit API call for a video id
- on_upload_finalized: object-store notification that an upload landed

Both re-read the record, check it against the lifecycle state machine, merge
status "queued" and then publish the job message. The merge happens before the
publish, so a publish failure leaves the record "queued" without a job in
flight; calling request_processing again (or reconcile_stuck) publishes anew.

The dispatcher also issues upload intents: it creates the record and a
signed upload URL whose object key embeds the new video id.
"""

import logging
import re
from datetime import timedelta
from typing import List, Optional, Tuple

from api.blob_store import BlobStore, parse_storage_uri, storage_uri
from api.enums import VideoStatus
from api.errors import (
    BadRequest,
    DispatchFailure,
    InvalidState,
    NotFound,
    PipelineError,
    QueueUnavailable,
    describe_exception,
)
from api.job_queue import JobMessage, JobPublisher
from api.schemas import UploadIntentResponse, VideoRecord, VideoUpdate
from api.status_store import StatusStore, utcnow
from api.video_state import VideoStateMachine, video_state_machine
from config import (
    DEFAULT_UPLOAD_CONTENT_TYPE,
    PROCESSED_BUCKET,
    PROCESSING_TOPIC,
    RAW_BUCKET,
    SIGNED_URL_TTL,
    STORAGE_URI_SCHEME,
)

logger = logging.getLogger(__name__)

RAW_PREFIX = "raw/"

# raw/<id>-<filename>; ids never contain "-"
_RAW_OBJECT_KEY = re.compile(r"^raw/([^/-]+)-")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def sanitize_filename(filename: str) -> str:
    """Replace every character outside [A-Za-z0-9_.-] with an underscore."""
    return _UNSAFE_FILENAME_CHARS.sub("_", filename)


def raw_object_key(video_id: str, filename: str) -> str:
    """Object key for a raw upload: raw/<id>-<sanitized filename>."""
    return f"{RAW_PREFIX}{video_id}-{sanitize_filename(filename)}"


def video_id_from_object_key(object_key: str) -> Optional[str]:
    """Extract the video id from a raw/<id>-<filename> key, or None."""
    match = _RAW_OBJECT_KEY.match(object_key or "")
    return match.group(1) if match else None


class JobDispatcher:
    """Queues transcode jobs for uploaded videos."""

    def __init__(
        self,
        store: StatusStore,
        blobs: BlobStore,
        publisher: Optional[JobPublisher],
        raw_bucket: str = RAW_BUCKET,
        output_bucket: str = PROCESSED_BUCKET,
        topic: str = PROCESSING_TOPIC,
        scheme: str = STORAGE_URI_SCHEME,
        signed_url_ttl: int = SIGNED_URL_TTL,
        state_machine: VideoStateMachine = video_state_machine,
    ):
        self.store = store
        self.blobs = blobs
        self.publisher = publisher
        self.raw_bucket = raw_bucket
        self.output_bucket = output_bucket
        self.topic = topic
        self.scheme = scheme
        self.signed_url_ttl = signed_url_ttl
        self.state_machine = state_machine

    # =========================================================================
    # Upload intent
    # =========================================================================

    async def create_upload(
        self,
        title: str,
        description: Optional[str],
        filename: str,
        content_type: Optional[str] = None,
        uploaded_by: Optional[str] = None,
    ) -> UploadIntentResponse:
        """
        Create a record in "uploading" and a signed URL to upload its raw file.

        Raises:
            BadRequest: If title or filename is missing
        """
        title = (title or "").strip()
        if not title or not filename:
            raise BadRequest("title and filename are required")
        content_type = content_type or DEFAULT_UPLOAD_CONTENT_TYPE

        keys = {}

        def raw_path_for(video_id: str) -> str:
            keys[video_id] = raw_object_key(video_id, filename)
            return storage_uri(self.scheme, self.raw_bucket, keys[video_id])

        record = await self.store.create(title, description or "", raw_path_for, uploaded_by=uploaded_by)
        object_key = keys[record.id]
        upload_url = self.blobs.sign_upload(self.raw_bucket, object_key, content_type, self.signed_url_ttl)
        logger.info(f"Upload intent for video {record.id}: {self.raw_bucket}/{object_key}")
        return UploadIntentResponse(
            video_id=record.id,
            upload_url=upload_url,
            object_path=object_key,
            bucket=self.raw_bucket,
        )

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def request_processing(self, video_id: str) -> VideoRecord:
        """
        Queue a transcode job for a video.

        Accepted for records in "uploading" or "failed", and for "queued"
        records (re-publishes a job that may never have been delivered).

        Raises:
            NotFound: If the record does not exist
            InvalidState: If the record is processing/ready or has no raw upload
            DispatchFailure: If publishing failed (the record stays "queued")
            QueueUnavailable: If no job queue is configured (nothing is changed)
        """
        record = await self.store.get(video_id)
        return await self._queue(record)

    async def on_upload_finalized(self, bucket: str, object_key: str) -> Optional[VideoRecord]:
        """
        Handle an object-store finalize notification.

        Returns the queued record, or None when the event was ignored (other
        bucket, unknown object, or a duplicate notification).
        """
        if bucket != self.raw_bucket:
            logger.debug(f"Ignoring finalize for {bucket}/{object_key}: not the raw bucket")
            return None

        record = None
        video_id = video_id_from_object_key(object_key)
        if video_id:
            try:
                record = await self.store.get(video_id)
            except NotFound:
                record = None
        if record is None:
            record = await self.store.find_by_raw_path(storage_uri(self.scheme, bucket, object_key))
        if record is None:
            logger.warning(f"Finalize for {bucket}/{object_key} matches no video record, dropping")
            return None

        if self.state_machine.is_duplicate_finalize(record.status):
            logger.info(f"Duplicate finalize for video {record.id} (status {record.status.value}), ignoring")
            return None

        return await self._queue(record)

    def _raw_location(self, record: VideoRecord) -> Tuple[str, str]:
        location = parse_storage_uri(record.raw_path, self.scheme)
        if location is None or location[0] != self.raw_bucket:
            raise InvalidState(
                f"Video {record.id} has no raw upload in bucket {self.raw_bucket}",
                video_id=record.id,
            )
        return location

    async def _queue(self, record: VideoRecord) -> VideoRecord:
        if self.publisher is None:
            raise QueueUnavailable("Job queue is not configured", video_id=record.id)
        if not self.state_machine.can_request_processing(record.status):
            raise InvalidState(
                f"Video {record.id} is {record.status.value}, cannot queue processing",
                video_id=record.id,
            )
        input_bucket, input_object = self._raw_location(record)
        self.state_machine.validate_transition(record.status, VideoStatus.QUEUED, video_id=record.id)

        record = await self.store.merge(record.id, VideoUpdate(status=VideoStatus.QUEUED, error=None))

        job = JobMessage(
            video_id=record.id,
            input_bucket=input_bucket,
            input_object=input_object,
            output_bucket=self.output_bucket,
        )
        try:
            await self.publisher.publish(self.topic, job.to_payload())
        except Exception as e:
            logger.error(f"Failed to publish job for video {record.id}, record left queued: {e}")
            raise DispatchFailure(
                f"Failed to publish job for video {record.id}: {describe_exception(e)}",
                video_id=record.id,
            ) from e

        logger.info(f"Queued video {record.id} ({input_bucket}/{input_object})")
        return record

    # =========================================================================
    # Stuck-job recovery
    # =========================================================================

    async def find_stuck(self, older_than: timedelta) -> List[VideoRecord]:
        """Records still "queued" with no update for longer than older_than."""
        return await self.store.list_queued_before(utcnow() - older_than)

    async def reconcile_stuck(self, older_than: timedelta) -> List[str]:
        """
        Re-publish jobs for records stuck in "queued".

        Returns:
            Ids of the records whose job was published again. Records that
            fail to re-publish are logged and left for the next run.
        """
        requeued = []
        for record in await self.find_stuck(older_than):
            try:
                await self.request_processing(record.id)
            except PipelineError as e:
                logger.warning(f"Could not re-publish job for video {record.id}: {e.message}")
                continue
            requeued.append(record.id)
        if requeued:
            logger.info(f"Re-published {len(requeued)} stuck job(s)")
        return requeued
