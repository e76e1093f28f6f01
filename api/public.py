"""
Public API - upload intents, video status and dispatch triggers.
Runs on port 9000.

Endpoints:
- POST /api/videos: create a record and a signed upload URL
- GET /api/videos, GET /api/videos/{id}: status records
- POST /api/videos/{id}/process: explicit processing request
- POST /api/storage/finalize: object-store finalize notification
- PUT /uploads/{bucket}/{key}: receiver for signed upload URLs
- GET /storage/{bucket}/{key}: playback files from the processed bucket

Collaborators (status store, blob store, job publisher, identity provider)
are composed in the lifespan and kept on app.state.services; create_app()
takes the coroutine that builds them.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from databases import Database
from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from redis.asyncio import Redis

from api.auth import JWTIdentityProvider, optional_identity
from api.blob_store import InvalidSignature, LocalBlobStore
from api.common import configure_logging, install_common_handlers
from api.database import configure_database, create_database, create_tables
from api.dispatcher import JobDispatcher
from api.enums import VideoStatus
from api.errors import NotFound, PipelineError
from api.job_queue import RedisJobQueue, create_redis
from api.schemas import CreateVideoRequest, FinalizeNotification, ProcessResponse, VideoListResponse
from api.status_store import DatabaseStatusStore, StatusStore
from config import (
    AUTH_JWT_SECRET,
    CORS_ALLOWED_ORIGINS,
    LIST_DEFAULT_LIMIT,
    LOG_LEVEL,
    MAX_UPLOAD_SIZE,
    PUBLIC_BASE_URL,
    PUBLIC_PORT,
    REDIS_URL,
    SIGNING_SECRET,
    STORAGE_PATH,
)

logger = logging.getLogger(__name__)


@dataclass
class PublicServices:
    """Collaborators used by the public API."""

    store: StatusStore
    blobs: LocalBlobStore
    dispatcher: JobDispatcher
    identity: Optional[JWTIdentityProvider] = None
    database: Optional[Database] = None
    redis: Optional[Redis] = None


async def open_public_services() -> PublicServices:
    """Create the schema if missing, connect the database and build collaborators from configuration."""
    await asyncio.to_thread(create_tables)
    database = create_database()
    await database.connect()
    await configure_database(database)

    store = DatabaseStatusStore(database)
    blobs = LocalBlobStore(STORAGE_PATH, PUBLIC_BASE_URL, SIGNING_SECRET)

    redis = create_redis(REDIS_URL) if REDIS_URL else None
    if redis is None:
        logger.warning("VIDQUEUE_REDIS_URL not set, processing requests will be rejected")
    publisher = RedisJobQueue(redis) if redis is not None else None

    identity = JWTIdentityProvider(AUTH_JWT_SECRET) if AUTH_JWT_SECRET else None
    if identity is None:
        logger.info("Identity verification disabled (no VIDQUEUE_AUTH_JWT_SECRET)")

    return PublicServices(
        store=store,
        blobs=blobs,
        dispatcher=JobDispatcher(store, blobs, publisher),
        identity=identity,
        database=database,
        redis=redis,
    )


async def close_public_services(services: PublicServices) -> None:
    if services.redis is not None:
        await services.redis.aclose()
    if services.database is not None:
        await services.database.disconnect()


def get_services(request: Request) -> PublicServices:
    return request.app.state.services


async def notify_upload_finalized(dispatcher: JobDispatcher, bucket: str, key: str) -> None:
    """Run the finalize trigger after a signed upload completes (background task)."""
    try:
        await dispatcher.on_upload_finalized(bucket, key)
    except PipelineError as e:
        # The record stays as it is; POST /api/videos/{id}/process recovers it
        logger.warning(f"Finalize for {bucket}/{key} not dispatched: {e.message}")


def create_app(open_services: Callable[[], Awaitable[PublicServices]] = open_public_services) -> FastAPI:
    """Build the public API; open_services composes the collaborators at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = await open_services()
        app.state.services = services
        app.state.identity = services.identity
        try:
            yield
        finally:
            await close_public_services(services)
            app.state.services = None

    app = FastAPI(title="vidqueue", description="Video upload and transcoding pipeline", lifespan=lifespan)
    install_common_handlers(app)

    # "*" allows any origin; credentials only with explicit origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOWED_ORIGINS,
        allow_credentials="*" not in CORS_ALLOWED_ORIGINS,
        allow_methods=["GET", "HEAD", "OPTIONS", "POST", "PUT"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["Content-Length", "Content-Range", "Accept-Ranges", "X-Request-ID"],
    )

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/api/videos")
    async def list_videos(
        status: Optional[VideoStatus] = None,
        limit: int = Query(default=LIST_DEFAULT_LIMIT, ge=1, le=500),
        services: PublicServices = Depends(get_services),
    ):
        """Newest videos first, optionally filtered by status."""
        records = await services.store.list_videos(limit, status=status)
        return VideoListResponse(videos=[record.to_api() for record in records])

    @app.get("/api/videos/{video_id}")
    async def get_video(video_id: str, services: PublicServices = Depends(get_services)):
        record = await services.store.get(video_id)
        return record.to_api()

    @app.post("/api/videos", status_code=201)
    async def create_video(
        data: CreateVideoRequest,
        services: PublicServices = Depends(get_services),
        uploaded_by: Optional[str] = Depends(optional_identity),
    ):
        """Create an upload intent: a record in "uploading" plus a signed upload URL."""
        intent = await services.dispatcher.create_upload(
            data.title,
            data.description,
            data.filename,
            content_type=data.content_type,
            uploaded_by=uploaded_by,
        )
        return JSONResponse(status_code=201, content=intent.model_dump(by_alias=True))

    @app.post("/api/videos/{video_id}/process")
    async def process_video(video_id: str, services: PublicServices = Depends(get_services)):
        """Queue (or re-queue) processing for an uploaded video."""
        record = await services.dispatcher.request_processing(video_id)
        return ProcessResponse(queued=True, video_id=record.id).model_dump(by_alias=True)

    @app.post("/api/storage/finalize")
    async def storage_finalize(data: FinalizeNotification, services: PublicServices = Depends(get_services)):
        """Object-store notification that an object write completed."""
        record = await services.dispatcher.on_upload_finalized(data.bucket, data.name)
        return {"queued": record is not None}

    @app.put("/uploads/{bucket}/{key:path}")
    async def receive_upload(
        bucket: str,
        key: str,
        request: Request,
        background_tasks: BackgroundTasks,
        expires: int = Query(...),
        content_type: str = Query(..., alias="contentType"),
        signature: str = Query(...),
        services: PublicServices = Depends(get_services),
    ):
        """Receiver for signed upload URLs issued by LocalBlobStore."""
        blobs = services.blobs
        blobs.verify_upload(bucket, key, content_type, expires, signature)
        sent_type = request.headers.get("content-type")
        if sent_type and sent_type.split(";")[0].strip().lower() != content_type.lower():
            raise InvalidSignature("Content-Type does not match the signed upload")

        size = await blobs.write_stream(bucket, key, request.stream(), content_type, MAX_UPLOAD_SIZE)
        background_tasks.add_task(notify_upload_finalized, services.dispatcher, bucket, key)
        return {"bucket": bucket, "name": key, "size": size}

    @app.get("/storage/{bucket}/{key:path}")
    async def playback_file(bucket: str, key: str, services: PublicServices = Depends(get_services)):
        """Serve rendition files from the processed bucket with their stored metadata."""
        blobs = services.blobs
        if bucket != services.dispatcher.output_bucket:
            raise NotFound("Object not found")
        try:
            found = blobs.exists(bucket, key)
        except ValueError:
            found = False
        if not found:
            raise NotFound("Object not found")

        path = blobs.object_path(bucket, key)
        metadata = blobs.get_metadata(bucket, key)
        headers = {}
        if metadata.get("cacheControl"):
            headers["Cache-Control"] = metadata["cacheControl"]
        return FileResponse(path, media_type=metadata.get("contentType"), headers=headers)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    configure_logging(LOG_LEVEL)
    uvicorn.run(app, host="0.0.0.0", port=PUBLIC_PORT)
