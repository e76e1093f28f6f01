from typing import Optional

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

metadata = sa.MetaData()

# Rendition heights are not constrained here: they are configuration, and
# records written under an older configuration must stay readable.
videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, default=""),
    sa.Column("raw_path", sa.Text, nullable=True),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('uploading', 'queued', 'processing', 'ready', 'failed')",
            name="ck_videos_status",
        ),
        nullable=False,
        default="uploading",
    ),  # uploading, queued, processing, ready, failed
    sa.Column("renditions", sa.JSON, nullable=True),  # {"360p": {"path", "playbackUrl", "height"}}
    sa.Column("processed_path", sa.Text, nullable=True),
    sa.Column("playback_url", sa.Text, nullable=True),
    sa.Column("error", sa.Text, nullable=True),
    sa.Column("uploaded_by", sa.String(255), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.Index("ix_videos_status", "status"),
    sa.Index("ix_videos_created_at", "created_at"),
    sa.Index("ix_videos_raw_path", "raw_path"),
)


def create_database(url: Optional[str] = None) -> Database:
    """
    Create a Database handle (not yet connected).

    Works with PostgreSQL (default) or SQLite URLs. The caller owns the
    connection lifecycle (connect/disconnect).
    """
    return Database(url or DATABASE_URL)


def create_tables(url: Optional[str] = None) -> None:
    """Create all tables synchronously (idempotent)."""
    engine = sa.create_engine(url or DATABASE_URL)
    try:
        metadata.create_all(engine)
    finally:
        engine.dispose()


async def configure_database(database: Database) -> None:
    """
    Configure database-specific settings after connection.

    SQLite is switched to WAL journaling so the API and the worker can share
    a file database; PostgreSQL needs nothing.
    """
    if database.url.dialect == "sqlite":
        await database.execute("PRAGMA journal_mode=WAL")
