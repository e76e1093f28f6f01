"""
Pydantic models for video records and the public API.

Records serialize with camelCase names (rawPath, playbackUrl, ...) on the wire
and map to snake_case columns in the videos table.
"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from api.enums import VideoStatus


class Rendition(BaseModel):
    """One transcoded output at a specific height."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    path: str = Field(min_length=1, description="Store location, e.g. gs://bucket/processed/<id>/720p.mp4")
    playback_url: str = Field(alias="playbackUrl", min_length=1)
    height: int = Field(gt=0)


def rendition_label(height: int) -> str:
    """Label used as the renditions map key, e.g. 720 -> "720p"."""
    return f"{height}p"


class VideoRecord(BaseModel):
    """A persisted video record."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    description: str = ""
    raw_path: Optional[str] = Field(default=None, alias="rawPath")
    status: VideoStatus
    renditions: Dict[str, Rendition] = Field(default_factory=dict)
    processed_path: Optional[str] = Field(default=None, alias="processedPath")
    playback_url: Optional[str] = Field(default=None, alias="playbackUrl")
    error: Optional[str] = None
    uploaded_by: Optional[str] = Field(default=None, alias="uploadedBy")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "VideoRecord":
        """Build a record from a videos table row."""
        return cls(
            id=row["id"],
            title=row["title"],
            description=row["description"] or "",
            raw_path=row["raw_path"],
            status=row["status"],
            renditions=row["renditions"] or {},
            processed_path=row["processed_path"],
            playback_url=row["playback_url"],
            error=row["error"],
            uploaded_by=row["uploaded_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_api(self) -> dict:
        """JSON-ready representation with camelCase keys, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class VideoUpdate(BaseModel):
    """
    Typed partial update for a video record.

    Only fields that were explicitly set are written; everything else in the
    stored record is left untouched. Setting a field to None clears it
    (e.g. error=None after a successful attempt).
    """

    model_config = ConfigDict(extra="forbid")

    status: Optional[VideoStatus] = None
    raw_path: Optional[str] = None
    renditions: Optional[Dict[str, Rendition]] = None
    processed_path: Optional[str] = None
    playback_url: Optional[str] = None
    error: Optional[str] = None

    @field_validator("status")
    @classmethod
    def status_not_cleared(cls, v):
        if v is None:
            raise ValueError("status cannot be cleared")
        return v

    def to_columns(self) -> Dict[str, Any]:
        """Column values for the fields explicitly set on this update."""
        columns: Dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if name == "status":
                value = value.value
            elif name == "renditions" and value is not None:
                value = {label: r.model_dump(by_alias=True) for label, r in value.items()}
            columns[name] = value
        return columns


# =============================================================================
# Public API request/response models
# =============================================================================


class CreateVideoRequest(BaseModel):
    """Upload-intent request body."""

    title: str = ""
    description: Optional[str] = None
    filename: str = ""
    content_type: Optional[str] = Field(default=None, alias="contentType", max_length=255)

    model_config = ConfigDict(populate_by_name=True)


class UploadIntentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    video_id: str = Field(alias="videoId")
    upload_url: str = Field(alias="uploadUrl")
    object_path: str = Field(alias="objectPath")
    bucket: str


class ProcessResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    queued: bool
    video_id: str = Field(alias="videoId")


class FinalizeNotification(BaseModel):
    """Object-store finalize notification (bucket + object name)."""

    bucket: str = Field(min_length=1)
    name: str = Field(min_length=1)


class VideoListResponse(BaseModel):
    videos: List[dict]
