"""
Status Store Adapter - persistence for video records.

The dispatcher and worker depend only on the StatusStore protocol; the
DatabaseStatusStore implementation keeps records in the videos table through
the databases library. All writes are merges: only the fields named in a
VideoUpdate are touched, so concurrent writers never clobber unrelated fields.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

import sqlalchemy as sa
from databases import Database

from api.database import videos
from api.db_retry import db_execute_with_retry, execute_with_retry, fetch_all_with_retry, fetch_one_with_retry
from api.enums import VideoStatus
from api.errors import NotFound
from api.schemas import VideoRecord, VideoUpdate

logger = logging.getLogger(__name__)

# Smallest step used to keep updated_at strictly increasing per record
_TIMESTAMP_STEP = timedelta(microseconds=1)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware UTC.

    SQLite doesn't store timezone info, so datetimes read back may be naive
    even though they were written as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RawPathBuilder(Protocol):
    def __call__(self, video_id: str) -> str: ...


class StatusStore(Protocol):
    """Collaborator contract consumed by the dispatcher and the worker."""

    async def create(
        self, title: str, description: str, raw_path_for: RawPathBuilder, uploaded_by: Optional[str] = None
    ) -> VideoRecord: ...

    async def get(self, video_id: str) -> VideoRecord: ...

    async def merge(self, video_id: str, update: VideoUpdate) -> VideoRecord: ...

    async def find_by_raw_path(self, raw_path: str) -> Optional[VideoRecord]: ...

    async def list_videos(self, limit: int, status: Optional[VideoStatus] = None) -> List[VideoRecord]: ...

    async def list_queued_before(self, cutoff: datetime) -> List[VideoRecord]: ...


def _row_to_record(row) -> VideoRecord:
    record = VideoRecord.from_row(row)
    record.created_at = ensure_utc(record.created_at)
    record.updated_at = ensure_utc(record.updated_at)
    return record


class DatabaseStatusStore:
    """StatusStore backed by the videos table."""

    def __init__(self, database: Database):
        self.database = database

    async def create(
        self,
        title: str,
        description: str,
        raw_path_for: RawPathBuilder,
        uploaded_by: Optional[str] = None,
    ) -> VideoRecord:
        """
        Create a record in "uploading" with a store-assigned id.

        raw_path_for receives the new id and returns the record's raw object
        location, since the upload key embeds the id.
        """
        video_id = uuid.uuid4().hex
        now = utcnow()
        await db_execute_with_retry(
            self.database,
            videos.insert().values(
                id=video_id,
                title=title,
                description=description or "",
                raw_path=raw_path_for(video_id),
                status=VideoStatus.UPLOADING.value,
                renditions=None,
                uploaded_by=uploaded_by,
                created_at=now,
                updated_at=now,
            ),
        )
        logger.info(f"Created video {video_id} ({title!r})")
        return await self.get(video_id)

    async def get(self, video_id: str) -> VideoRecord:
        """
        Fetch a record.

        Raises:
            NotFound: If no record has this id
        """
        row = await fetch_one_with_retry(self.database, videos.select().where(videos.c.id == video_id))
        if row is None:
            raise NotFound(f"Video {video_id} not found", video_id=video_id)
        return _row_to_record(row)

    async def merge(self, video_id: str, update: VideoUpdate) -> VideoRecord:
        """
        Apply a partial update and refresh updated_at.

        updated_at is set to max(now, previous + 1µs) so it strictly increases
        on every mutation of the same record, even when two merges land within
        the clock's resolution.

        Raises:
            NotFound: If no record has this id
        """
        columns = update.to_columns()

        async def _merge() -> None:
            async with self.database.transaction():
                current = await self.database.fetch_one(
                    sa.select(videos.c.updated_at).where(videos.c.id == video_id)
                )
                if current is None:
                    raise NotFound(f"Video {video_id} not found", video_id=video_id)
                previous = ensure_utc(current["updated_at"])
                now = utcnow()
                if previous is not None and now <= previous:
                    now = previous + _TIMESTAMP_STEP
                await self.database.execute(
                    videos.update().where(videos.c.id == video_id).values(**columns, updated_at=now)
                )

        await execute_with_retry(_merge)
        logger.debug(f"Merged {sorted(columns)} into video {video_id}")
        return await self.get(video_id)

    async def find_by_raw_path(self, raw_path: str) -> Optional[VideoRecord]:
        """
        Find the record whose raw_path matches exactly.

        If several records share a raw path, the most recently created wins.
        """
        row = await fetch_one_with_retry(
            self.database,
            videos.select()
            .where(videos.c.raw_path == raw_path)
            .order_by(videos.c.created_at.desc())
            .limit(1),
        )
        return _row_to_record(row) if row else None

    async def list_videos(self, limit: int, status: Optional[VideoStatus] = None) -> List[VideoRecord]:
        """Newest records first, optionally filtered by status."""
        query = videos.select()
        if status is not None:
            query = query.where(videos.c.status == status.value)
        query = query.order_by(videos.c.created_at.desc()).limit(limit)
        rows = await fetch_all_with_retry(self.database, query)
        return [_row_to_record(row) for row in rows]

    async def list_queued_before(self, cutoff: datetime) -> List[VideoRecord]:
        """Records still "queued" whose last update is older than cutoff (oldest first)."""
        rows = await fetch_all_with_retry(
            self.database,
            videos.select()
            .where(videos.c.status == VideoStatus.QUEUED.value)
            .where(videos.c.updated_at < cutoff)
            .order_by(videos.c.updated_at.asc()),
        )
        return [_row_to_record(row) for row in rows]
