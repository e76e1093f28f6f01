"""
Worker API - push endpoint for transcode jobs.
Runs on port 8080.

The job queue delivers each job as a push envelope to POST /process-video and
redelivers on any non-2xx answer, so the status codes matter:

- 200: job processed (record "ready") or skipped by the redelivery policy
- 400: malformed envelope or payload (no record touched)
- 401: push credential mismatch (no side effects)
- 404: no record for the video id
- 409: the record was never queued
- 500: processing failed (record already "failed")

Run with: python -m api.worker_api
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from databases import Database
from fastapi import Depends, FastAPI, Request
from fastapi.responses import PlainTextResponse

from api.auth import verify_job_token
from api.blob_store import LocalBlobStore
from api.common import configure_logging, install_common_handlers
from api.database import configure_database, create_database, create_tables
from api.errors import BadRequest
from api.job_queue import parse_push_envelope
from api.status_store import DatabaseStatusStore
from config import JOB_VERIFICATION_TOKEN, LOG_LEVEL, PUBLIC_BASE_URL, SIGNING_SECRET, STORAGE_PATH, WORKER_PORT
from worker.processor import TranscodeWorker
from worker.transcoder import FFmpegTranscoder

logger = logging.getLogger(__name__)


@dataclass
class WorkerServices:
    worker: TranscodeWorker
    job_token: str = ""
    database: Optional[Database] = None


async def open_worker_services() -> WorkerServices:
    """Create the schema if missing, connect the database and build the worker from configuration."""
    await asyncio.to_thread(create_tables)
    database = create_database()
    await database.connect()
    await configure_database(database)

    worker = TranscodeWorker(
        DatabaseStatusStore(database),
        LocalBlobStore(STORAGE_PATH, PUBLIC_BASE_URL, SIGNING_SECRET),
        FFmpegTranscoder(),
    )
    if not JOB_VERIFICATION_TOKEN:
        logger.warning("VIDQUEUE_JOB_VERIFICATION_TOKEN not set, push deliveries are not authenticated")
    logger.info(
        f"Worker ready: heights {worker.target_heights}, policy {worker.policy.value}, "
        f"output bucket {worker.output_bucket}"
    )
    return WorkerServices(worker=worker, job_token=JOB_VERIFICATION_TOKEN, database=database)


def get_services(request: Request) -> WorkerServices:
    return request.app.state.services


def create_app(open_services: Callable[[], Awaitable[WorkerServices]] = open_worker_services) -> FastAPI:
    """Build the worker API; open_services composes the worker at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = await open_services()
        app.state.services = services
        try:
            yield
        finally:
            if services.database is not None:
                await services.database.disconnect()
            app.state.services = None

    app = FastAPI(title="vidqueue worker", description="Transcode job push endpoint", lifespan=lifespan)
    install_common_handlers(app)

    @app.get("/healthz", response_class=PlainTextResponse)
    async def healthz():
        return "ok"

    @app.post("/process-video")
    async def process_video(request: Request, services: WorkerServices = Depends(get_services)):
        """Handle one push delivery of a transcode job."""
        verify_job_token(request, services.job_token)
        try:
            body = await request.json()
        except ValueError:
            raise BadRequest("Push body is not valid JSON")

        job, message_id = parse_push_envelope(body)
        logger.info(f"Delivery {message_id or '-'} for video {job.video_id}")
        outcome = await services.worker.handle_job(job)
        return {"status": outcome.value, "videoId": job.video_id}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    configure_logging(LOG_LEVEL)
    uvicorn.run(app, host="0.0.0.0", port=WORKER_PORT)
