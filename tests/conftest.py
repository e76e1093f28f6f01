"""
Pytest fixtures for vidqueue tests.
Provides a test database, a temporary blob store and fake collaborators.

Uses a SQLite file per test: the schema is created synchronously with
SQLAlchemy and the async stores connect through the databases library.
"""

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio
import sqlalchemy as sa
from databases import Database

from api.blob_store import LocalBlobStore, storage_uri
from api.database import configure_database, create_tables, videos
from api.dispatcher import JobDispatcher
from api.enums import VideoStatus
from api.status_store import DatabaseStatusStore
from worker.processor import TranscodeWorker

from fakes import BASE_URL, PROCESSED_BUCKET, RAW_BUCKET, SIGNING_SECRET, TOPIC, FakePublisher, FakeTranscoder


def sync_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def _insert_video(
    db_url: str,
    video_id: str,
    raw_path: Optional[str],
    status: VideoStatus = VideoStatus.UPLOADING,
    title: str = "Test Video",
    updated_at: Optional[datetime] = None,
    **fields,
) -> None:
    """Insert a record with a chosen id directly into the videos table."""
    now = datetime.now(timezone.utc)
    engine = sa.create_engine(db_url)
    try:
        with engine.begin() as conn:
            conn.execute(
                videos.insert().values(
                    id=video_id,
                    title=title,
                    description="",
                    raw_path=raw_path,
                    status=status.value,
                    created_at=now,
                    updated_at=updated_at or now,
                    **fields,
                )
            )
    finally:
        engine.dispose()


@pytest.fixture
def db_url(tmp_path) -> str:
    """URL of a fresh SQLite database with the schema created."""
    url = sync_url(tmp_path / "vidqueue-test.db")
    create_tables(url)
    return url


@pytest_asyncio.fixture
async def database(db_url):
    db = Database(db_url)
    await db.connect()
    await configure_database(db)
    yield db
    await db.disconnect()


@pytest.fixture
def insert_video(db_url):
    """Factory inserting a record with a chosen id (see _insert_video)."""

    def _insert(video_id: str, raw_path: Optional[str], status: VideoStatus = VideoStatus.UPLOADING, **fields):
        _insert_video(db_url, video_id, raw_path, status, **fields)

    return _insert


@pytest.fixture
def store(database) -> DatabaseStatusStore:
    return DatabaseStatusStore(database)


@pytest.fixture
def blobs(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "storage", BASE_URL, SIGNING_SECRET)


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def dispatcher(store, blobs, publisher) -> JobDispatcher:
    return JobDispatcher(
        store,
        blobs,
        publisher,
        raw_bucket=RAW_BUCKET,
        output_bucket=PROCESSED_BUCKET,
        topic=TOPIC,
        scheme="gs",
        signed_url_ttl=900,
    )


@pytest.fixture
def work_dir(tmp_path) -> Path:
    return tmp_path / "work"


@pytest.fixture
def worker(store, blobs, transcoder, work_dir) -> TranscodeWorker:
    return TranscodeWorker(
        store,
        blobs,
        transcoder,
        target_heights=[360, 720],
        output_bucket=PROCESSED_BUCKET,
        scheme="gs",
        work_dir=work_dir,
    )


@pytest.fixture
def raw_upload(tmp_path, blobs):
    """Factory storing a raw object in the raw bucket and returning its storage URI."""

    def _store(key: Optional[str] = None, content: bytes = b"\x00\x00\x00\x18ftypmp42 raw video"):
        key = key or f"raw/{uuid.uuid4().hex}-clip.mp4"
        path = blobs.object_path(RAW_BUCKET, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return storage_uri("gs", RAW_BUCKET, key)

    return _store


@pytest.fixture
def fetch_video(db_url):
    """Read a record straight from the videos table (for tests driving an app in its own loop)."""

    def _fetch(video_id: str) -> Optional[dict]:
        engine = sa.create_engine(db_url)
        try:
            with engine.connect() as conn:
                row = conn.execute(videos.select().where(videos.c.id == video_id)).mappings().first()
                return dict(row) if row else None
        finally:
            engine.dispose()

    return _fetch
