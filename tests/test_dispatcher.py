"""Tests for the job dispatcher: upload intents, processing requests and finalize triggers."""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from api.dispatcher import JobDispatcher, raw_object_key, sanitize_filename, video_id_from_object_key
from api.enums import VideoStatus
from api.errors import BadRequest, DispatchFailure, InvalidState, NotFound, QueueUnavailable
from api.schemas import VideoUpdate


class TestObjectKeys:
    def test_sanitize_filename(self):
        assert sanitize_filename("my clip (final).mp4") == "my_clip__final_.mp4"
        assert sanitize_filename("../../etc/passwd") == ".._.._etc_passwd"
        assert sanitize_filename("ok-name_1.MOV") == "ok-name_1.MOV"

    def test_raw_object_key_embeds_id(self):
        assert raw_object_key("abc123", "a b.mp4") == "raw/abc123-a_b.mp4"

    def test_video_id_from_object_key(self):
        assert video_id_from_object_key("raw/abc123-clip.mp4") == "abc123"
        assert video_id_from_object_key("raw/abc123-my-clip.mp4") == "abc123"
        assert video_id_from_object_key("processed/abc123.mp4") is None
        assert video_id_from_object_key("raw/nodash.mp4") is None
        assert video_id_from_object_key("") is None


class TestCreateUpload:
    @pytest.mark.asyncio
    async def test_creates_record_and_signed_url(self, dispatcher, store, blobs):
        intent = await dispatcher.create_upload("Holiday", "beach", "my clip.mp4", uploaded_by="alice")

        record = await store.get(intent.video_id)
        assert record.status == VideoStatus.UPLOADING
        assert intent.bucket == "raw-videos"
        assert intent.object_path == f"raw/{intent.video_id}-my_clip.mp4"
        assert record.raw_path == f"gs://raw-videos/{intent.object_path}"
        assert record.uploaded_by == "alice"

        url = urlparse(intent.upload_url)
        assert url.path == f"/uploads/raw-videos/{intent.object_path}"
        query = {k: v[0] for k, v in parse_qs(url.query).items()}
        assert query["contentType"] == "video/mp4"
        blobs.verify_upload("raw-videos", intent.object_path, "video/mp4", int(query["expires"]), query["signature"])

    @pytest.mark.asyncio
    async def test_custom_content_type_is_signed(self, dispatcher):
        intent = await dispatcher.create_upload("T", None, "clip.mov", content_type="video/quicktime")
        assert "contentType=video%2Fquicktime" in intent.upload_url

    @pytest.mark.asyncio
    @pytest.mark.parametrize("title,filename", [("", "clip.mp4"), ("   ", "clip.mp4"), ("Title", "")])
    async def test_requires_title_and_filename(self, dispatcher, publisher, title, filename):
        with pytest.raises(BadRequest):
            await dispatcher.create_upload(title, "", filename)
        assert publisher.published == []


class TestRequestProcessing:
    @pytest.mark.asyncio
    async def test_queues_and_publishes_one_job(self, store, blobs, publisher, insert_video):
        insert_video("v1", "gs://raw/v1-clip.mp4", VideoStatus.UPLOADING)
        dispatcher = JobDispatcher(store, blobs, publisher, raw_bucket="raw", output_bucket="processed-videos")

        record = await dispatcher.request_processing("v1")

        assert record.status == VideoStatus.QUEUED
        assert (await store.get("v1")).status == VideoStatus.QUEUED
        assert len(publisher.published) == 1
        topic, payload = publisher.published[0]
        assert topic == dispatcher.topic
        assert payload == {
            "videoId": "v1",
            "inputBucket": "raw",
            "inputObject": "v1-clip.mp4",
            "outputBucket": "processed-videos",
        }

    @pytest.mark.asyncio
    async def test_failed_record_is_requeued_and_error_cleared(self, dispatcher, store, publisher, insert_video):
        insert_video("v2", "gs://raw-videos/raw/v2-clip.mp4", VideoStatus.FAILED, error="FFmpeg 360p exited")

        record = await dispatcher.request_processing("v2")

        assert record.status == VideoStatus.QUEUED
        assert record.error is None
        assert len(publisher.published) == 1

    @pytest.mark.asyncio
    async def test_queued_record_is_republished(self, dispatcher, publisher, insert_video):
        insert_video("v3", "gs://raw-videos/raw/v3-clip.mp4", VideoStatus.QUEUED)

        await dispatcher.request_processing("v3")
        await dispatcher.request_processing("v3")

        assert len(publisher.published) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [VideoStatus.PROCESSING, VideoStatus.READY])
    async def test_rejects_processing_and_ready(self, dispatcher, store, publisher, insert_video, status):
        insert_video("v4", "gs://raw-videos/raw/v4-clip.mp4", status)
        before = await store.get("v4")

        with pytest.raises(InvalidState):
            await dispatcher.request_processing("v4")

        after = await store.get("v4")
        assert after.status == status
        assert after.updated_at == before.updated_at
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_missing_record(self, dispatcher, publisher):
        with pytest.raises(NotFound):
            await dispatcher.request_processing("nope")
        assert publisher.published == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw_path",
        [None, "", "s3://raw-videos/raw/v5-clip.mp4", "gs://other-bucket/raw/v5-clip.mp4", "gs://raw-videos/"],
    )
    async def test_rejects_missing_or_foreign_raw_path(self, dispatcher, store, publisher, insert_video, raw_path):
        insert_video("v5", raw_path, VideoStatus.UPLOADING)

        with pytest.raises(InvalidState):
            await dispatcher.request_processing("v5")

        assert (await store.get("v5")).status == VideoStatus.UPLOADING
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_publish_failure_leaves_record_queued(self, dispatcher, store, publisher, insert_video):
        insert_video("v6", "gs://raw-videos/raw/v6-clip.mp4", VideoStatus.UPLOADING)
        publisher.fail = ConnectionError("redis down")

        with pytest.raises(DispatchFailure) as exc_info:
            await dispatcher.request_processing("v6")

        assert exc_info.value.status_code == 502
        assert "redis down" in exc_info.value.message
        assert (await store.get("v6")).status == VideoStatus.QUEUED

        # Re-invoking recovers the stuck record
        publisher.fail = None
        await dispatcher.request_processing("v6")
        assert len(publisher.published) == 1

    @pytest.mark.asyncio
    async def test_no_queue_configured(self, store, blobs, insert_video):
        insert_video("v7", "gs://raw-videos/raw/v7-clip.mp4", VideoStatus.UPLOADING)
        dispatcher = JobDispatcher(store, blobs, None)

        with pytest.raises(QueueUnavailable):
            await dispatcher.request_processing("v7")

        assert (await store.get("v7")).status == VideoStatus.UPLOADING


class TestUploadFinalized:
    @pytest.mark.asyncio
    async def test_finalize_queues_uploading_record(self, dispatcher, publisher):
        intent = await dispatcher.create_upload("T", "", "clip.mp4")

        record = await dispatcher.on_upload_finalized("raw-videos", intent.object_path)

        assert record is not None
        assert record.status == VideoStatus.QUEUED
        assert publisher.published[0][1]["inputObject"] == intent.object_path

    @pytest.mark.asyncio
    async def test_duplicate_finalize_after_ready_is_ignored(self, dispatcher, store, publisher, insert_video):
        insert_video("v8", "gs://raw-videos/raw/v8-clip.mp4", VideoStatus.READY)
        before = await store.get("v8")

        result = await dispatcher.on_upload_finalized("raw-videos", "raw/v8-clip.mp4")

        assert result is None
        after = await store.get("v8")
        assert after.status == VideoStatus.READY
        assert after.updated_at == before.updated_at
        assert publisher.published == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [VideoStatus.QUEUED, VideoStatus.PROCESSING])
    async def test_duplicate_finalize_while_in_flight(self, dispatcher, publisher, insert_video, status):
        insert_video("v9", "gs://raw-videos/raw/v9-clip.mp4", status)

        assert await dispatcher.on_upload_finalized("raw-videos", "raw/v9-clip.mp4") is None
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_finalize_after_failure_requeues(self, dispatcher, publisher, insert_video):
        insert_video("v10", "gs://raw-videos/raw/v10-clip.mp4", VideoStatus.FAILED, error="boom")

        record = await dispatcher.on_upload_finalized("raw-videos", "raw/v10-clip.mp4")

        assert record.status == VideoStatus.QUEUED
        assert len(publisher.published) == 1

    @pytest.mark.asyncio
    async def test_other_bucket_is_ignored(self, dispatcher, publisher, insert_video):
        insert_video("v11", "gs://raw-videos/raw/v11-clip.mp4", VideoStatus.UPLOADING)

        assert await dispatcher.on_upload_finalized("processed-videos", "raw/v11-clip.mp4") is None
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_unknown_object_is_dropped(self, dispatcher, publisher):
        assert await dispatcher.on_upload_finalized("raw-videos", "raw/unknown-clip.mp4") is None
        assert await dispatcher.on_upload_finalized("raw-videos", "somewhere/else.mp4") is None
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_falls_back_to_raw_path_lookup(self, dispatcher, publisher, insert_video):
        # Key does not follow raw/<id>-<filename>
        insert_video("v12", "gs://raw-videos/imports/holiday.mp4", VideoStatus.UPLOADING)

        record = await dispatcher.on_upload_finalized("raw-videos", "imports/holiday.mp4")

        assert record is not None and record.id == "v12"
        assert publisher.published[0][1]["inputObject"] == "imports/holiday.mp4"


class TestReconcileStuck:
    @pytest.mark.asyncio
    async def test_republishes_only_stuck_records(self, dispatcher, store, publisher, insert_video):
        old = datetime.now(timezone.utc) - timedelta(hours=2)
        insert_video("stuck", "gs://raw-videos/raw/stuck-clip.mp4", VideoStatus.QUEUED, updated_at=old)
        insert_video("recent", "gs://raw-videos/raw/recent-clip.mp4", VideoStatus.QUEUED)

        stuck = await dispatcher.find_stuck(timedelta(hours=1))
        requeued = await dispatcher.reconcile_stuck(timedelta(hours=1))

        assert [v.id for v in stuck] == ["stuck"]
        assert requeued == ["stuck"]
        assert [p["videoId"] for _, p in publisher.published] == ["stuck"]
        assert (await store.get("stuck")).updated_at > old

    @pytest.mark.asyncio
    async def test_publish_failures_are_reported_not_raised(self, dispatcher, publisher, insert_video):
        old = datetime.now(timezone.utc) - timedelta(hours=2)
        insert_video("stuck", "gs://raw-videos/raw/stuck-clip.mp4", VideoStatus.QUEUED, updated_at=old)
        publisher.fail = ConnectionError("redis down")

        assert await dispatcher.reconcile_stuck(timedelta(hours=1)) == []

    @pytest.mark.asyncio
    async def test_merge_is_visible_before_publish(self, dispatcher, store, publisher, insert_video):
        insert_video("v13", "gs://raw-videos/raw/v13-clip.mp4", VideoStatus.UPLOADING)
        seen = []

        async def recording_publish(topic, payload):
            seen.append((await store.get(payload["videoId"])).status)
            return "1-0"

        publisher.publish = recording_publish
        await dispatcher.request_processing("v13")

        assert seen == [VideoStatus.QUEUED]

    @pytest.mark.asyncio
    async def test_merge_keeps_unrelated_fields(self, dispatcher, store, insert_video):
        insert_video("v14", "gs://raw-videos/raw/v14-clip.mp4", VideoStatus.UPLOADING, title="Keep me")
        await store.merge("v14", VideoUpdate(error="old"))

        record = await dispatcher.request_processing("v14")

        assert record.title == "Keep me"
        assert record.raw_path == "gs://raw-videos/raw/v14-clip.mp4"
