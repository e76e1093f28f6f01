"""
Transcode Worker - turns one job message into a ready (or failed) video.

handle_job runs strictly in sequence:

1. validate the payload (BadRequest, no record touched)
2. re-read the record and apply the redelivery policy
3. merge status "processing", clearing the previous error and renditions
4. download the raw upload into a scoped temp directory
5. per target height, ascending: transcode, upload, record the rendition
6. merge the complete rendition set and status "ready"
7. delete the temp directory, whatever happened

Any failure in steps 4-5 aborts the whole attempt: the record goes to
"failed" with the error message and no partial rendition set is committed.
The error is re-raised so the push endpoint answers non-2xx.
"""

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

from api.blob_store import BlobStore, storage_uri
from api.enums import JobOutcome, ReprocessPolicy, VideoStatus
from api.errors import (
    DownloadFailure,
    InvalidState,
    ProcessingFailure,
    TranscodeFailure,
    UploadFailure,
    describe_exception,
    truncate_error,
)
from api.job_queue import JobMessage, parse_job_payload
from api.schemas import Rendition, VideoUpdate, rendition_label
from api.status_store import StatusStore
from api.video_state import REDELIVERY_SOURCES, VideoStateMachine, video_state_machine
from config import (
    OUTPUT_CACHE_CONTROL,
    OUTPUT_CONTENT_TYPE,
    OUTPUT_EXTENSION,
    PROCESSED_BUCKET,
    REPROCESS_POLICY,
    STORAGE_URI_SCHEME,
    TARGET_HEIGHTS,
    WORKER_WORK_DIR,
)
from worker.transcoder import TranscoderEngine

logger = logging.getLogger(__name__)


def rendition_key(video_id: str, height: int, single: bool, extension: str = OUTPUT_EXTENSION) -> str:
    """
    Output object key for a rendition.

    processed/<id>/<h>p.<ext>, or processed/<id>.<ext> when only one height
    is configured.
    """
    if single:
        return f"processed/{video_id}.{extension}"
    return f"processed/{video_id}/{rendition_label(height)}.{extension}"


class TranscodeWorker:
    """Executes transcode jobs against injected store, blob and transcoder collaborators."""

    def __init__(
        self,
        store: StatusStore,
        blobs: BlobStore,
        transcoder: TranscoderEngine,
        target_heights: Optional[List[int]] = None,
        output_bucket: str = PROCESSED_BUCKET,
        scheme: str = STORAGE_URI_SCHEME,
        work_dir: Path = WORKER_WORK_DIR,
        policy: ReprocessPolicy = ReprocessPolicy(REPROCESS_POLICY),
        content_type: str = OUTPUT_CONTENT_TYPE,
        cache_control: Optional[str] = OUTPUT_CACHE_CONTROL,
        extension: str = OUTPUT_EXTENSION,
        state_machine: VideoStateMachine = video_state_machine,
    ):
        heights = sorted(set(target_heights or TARGET_HEIGHTS))
        if not heights:
            raise ValueError("At least one target height is required")
        self.store = store
        self.blobs = blobs
        self.transcoder = transcoder
        self.target_heights = heights
        self.output_bucket = output_bucket
        self.scheme = scheme
        self.work_dir = Path(work_dir)
        self.policy = policy
        self.content_type = content_type
        self.cache_control = cache_control
        self.extension = extension
        self.state_machine = state_machine

    async def handle_job(self, payload: Any) -> JobOutcome:
        """
        Process one job.

        Args:
            payload: A JobMessage or the decoded job JSON

        Returns:
            JobOutcome.PROCESSED when the record ended "ready",
            JobOutcome.SKIPPED when the redelivery policy skipped the job

        Raises:
            BadRequest: Malformed payload (no record touched)
            NotFound: No record for the video id (no record touched)
            InvalidState: The record was never queued (no record touched)
            DownloadFailure, TranscodeFailure, UploadFailure: The attempt failed
                and the record is now "failed"
        """
        job = payload if isinstance(payload, JobMessage) else parse_job_payload(payload)
        video_id = job.video_id

        record = await self.store.get(video_id)
        if not self.state_machine.processing_entry_allowed(record.status, self.policy):
            if record.status in REDELIVERY_SOURCES:
                logger.info(f"Skipping job for video {video_id}: already {record.status.value}")
                return JobOutcome.SKIPPED
            raise InvalidState(
                f"Video {video_id} is {record.status.value}, no job should be in flight",
                video_id=video_id,
            )
        if record.status != VideoStatus.QUEUED:
            logger.warning(f"Reprocessing video {video_id} from status {record.status.value}")

        # Renditions exist only while ready; a new attempt starts from an empty set
        await self.store.merge(
            video_id,
            VideoUpdate(
                status=VideoStatus.PROCESSING,
                error=None,
                renditions=None,
                processed_path=None,
                playback_url=None,
            ),
        )
        logger.info(f"Processing video {video_id} from {job.input_bucket}/{job.input_object}")

        output_bucket = job.output_bucket or self.output_bucket
        try:
            renditions = await self._produce_renditions(job, output_bucket)
        except ProcessingFailure as e:
            e.video_id = video_id
            await self._mark_failed(video_id, e)
            raise
        except Exception as e:
            failure = ProcessingFailure(describe_exception(e), video_id=video_id)
            await self._mark_failed(video_id, failure)
            raise failure from e

        best = renditions[rendition_label(self.target_heights[-1])]
        self.state_machine.validate_transition(VideoStatus.PROCESSING, VideoStatus.READY, video_id=video_id)
        await self.store.merge(
            video_id,
            VideoUpdate(
                status=VideoStatus.READY,
                renditions=renditions,
                processed_path=best.path,
                playback_url=best.playback_url,
                error=None,
            ),
        )
        logger.info(f"Video {video_id} ready with {', '.join(renditions)}")
        return JobOutcome.PROCESSED

    async def _produce_renditions(self, job: JobMessage, output_bucket: str) -> Dict[str, Rendition]:
        """Download, transcode and upload every rendition; nothing is committed to the record here."""
        self.work_dir.mkdir(parents=True, exist_ok=True)
        temp_dir = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix=f"{job.video_id}-", dir=self.work_dir))
        try:
            source = temp_dir / f"source{PurePosixPath(job.input_object).suffix[:16]}"
            try:
                await self.blobs.download(job.input_bucket, job.input_object, source)
            except Exception as e:
                raise DownloadFailure(f"Download failed: {describe_exception(e)}") from e

            single = len(self.target_heights) == 1
            renditions: Dict[str, Rendition] = {}
            for height in self.target_heights:
                label = rendition_label(height)
                output = temp_dir / f"{label}.{self.extension}"
                try:
                    await self.transcoder.transcode(source, height, output)
                except TranscodeFailure:
                    raise
                except Exception as e:
                    raise TranscodeFailure(f"Transcode to {label} failed: {describe_exception(e)}") from e

                key = rendition_key(job.video_id, height, single, self.extension)
                try:
                    await self.blobs.upload(output, output_bucket, key, self.content_type, self.cache_control)
                except Exception as e:
                    raise UploadFailure(f"Upload of {label} failed: {describe_exception(e)}") from e

                renditions[label] = Rendition(
                    path=storage_uri(self.scheme, output_bucket, key),
                    playback_url=self.blobs.public_url(output_bucket, key),
                    height=height,
                )
                logger.info(f"Video {job.video_id}: {label} uploaded to {output_bucket}/{key}")
            return renditions
        finally:
            await asyncio.to_thread(shutil.rmtree, temp_dir, ignore_errors=True)

    async def _mark_failed(self, video_id: str, failure: ProcessingFailure) -> None:
        self.state_machine.validate_transition(VideoStatus.PROCESSING, VideoStatus.FAILED, video_id=video_id)
        logger.error(f"Video {video_id} failed during {failure.stage}: {failure.message}")
        try:
            await self.store.merge(
                video_id,
                VideoUpdate(status=VideoStatus.FAILED, error=truncate_error(failure.message)),
            )
        except Exception as e:
            # The original failure is re-raised by the caller; the record stays "processing"
            logger.error(f"Could not record failure for video {video_id}: {e}")
