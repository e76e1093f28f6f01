"""Tests for the job message codec and the Redis Streams publisher."""

import base64
import json
from unittest.mock import AsyncMock

import pytest

from api.errors import BadRequest
from api.job_queue import (
    JobMessage,
    RedisJobQueue,
    dead_letter_stream_name,
    encode_push_envelope,
    parse_job_payload,
    parse_push_envelope,
    stream_name,
)

VALID = {"videoId": "v1", "inputBucket": "raw", "inputObject": "v1-clip.mp4", "outputBucket": "processed"}


def _envelope(payload, message_id="1-0"):
    data = base64.b64encode(json.dumps(payload).encode()).decode()
    return {"message": {"data": data, "messageId": message_id}, "subscription": "vidqueue:video-processing:push"}


class TestParseJobPayload:
    def test_valid_payload(self):
        job = parse_job_payload(VALID)
        assert job.video_id == "v1"
        assert job.input_bucket == "raw"
        assert job.input_object == "v1-clip.mp4"
        assert job.output_bucket == "processed"

    def test_output_bucket_is_optional(self):
        payload = {k: v for k, v in VALID.items() if k != "outputBucket"}
        job = parse_job_payload(payload)
        assert job.output_bucket is None
        assert "outputBucket" not in job.to_payload()

    @pytest.mark.parametrize("missing", ["videoId", "inputBucket", "inputObject"])
    def test_missing_required_field(self, missing):
        payload = {k: v for k, v in VALID.items() if k != missing}
        with pytest.raises(BadRequest) as exc_info:
            parse_job_payload(payload)
        assert missing in exc_info.value.message

    @pytest.mark.parametrize("value", ["", 42, None, ["a"]])
    def test_required_fields_must_be_non_empty_strings(self, value):
        with pytest.raises(BadRequest):
            parse_job_payload({**VALID, "inputObject": value})

    @pytest.mark.parametrize("payload", [None, "text", 3, ["videoId"]])
    def test_payload_must_be_object(self, payload):
        with pytest.raises(BadRequest):
            parse_job_payload(payload)

    def test_to_payload_uses_wire_names(self):
        job = JobMessage(video_id="v1", input_bucket="raw", input_object="k")
        assert job.to_payload() == {"videoId": "v1", "inputBucket": "raw", "inputObject": "k"}


class TestPushEnvelope:
    def test_parse_envelope(self):
        job, message_id = parse_push_envelope(_envelope(VALID, "17-3"))
        assert job.video_id == "v1"
        assert message_id == "17-3"

    def test_encode_then_parse(self):
        envelope = encode_push_envelope(VALID, "5-0", "sub")
        assert envelope["subscription"] == "sub"
        assert envelope["message"]["publishTime"]
        job, message_id = parse_push_envelope(envelope)
        assert job.to_payload() == VALID
        assert message_id == "5-0"

    @pytest.mark.parametrize(
        "body",
        [
            None,
            {},
            {"message": "not an object"},
            {"message": {}},
            {"message": {"data": ""}},
            {"message": {"data": "!!!not base64!!!"}},
            {"message": {"data": base64.b64encode(b"not json").decode()}},
        ],
    )
    def test_malformed_envelopes(self, body):
        with pytest.raises(BadRequest):
            parse_push_envelope(body)

    def test_malformed_job_inside_envelope(self):
        with pytest.raises(BadRequest):
            parse_push_envelope(_envelope({"videoId": "v1", "inputBucket": "raw"}))


class TestStreamNames:
    def test_names(self):
        assert stream_name("video-processing", "vidqueue") == "vidqueue:video-processing"
        assert dead_letter_stream_name("video-processing", "vidqueue") == "vidqueue:video-processing:dead-letter"


class TestRedisJobQueue:
    @pytest.mark.asyncio
    async def test_publish_appends_to_topic_stream(self):
        redis = AsyncMock()
        redis.xadd.return_value = "1700000000000-0"
        queue = RedisJobQueue(redis, prefix="vq", max_len=500)

        message_id = await queue.publish("video-processing", VALID)

        assert message_id == "1700000000000-0"
        redis.xadd.assert_awaited_once()
        args, kwargs = redis.xadd.call_args
        assert args[0] == "vq:video-processing"
        assert json.loads(args[1]["data"]) == VALID
        assert "published_at" in args[1]
        assert kwargs == {"maxlen": 500, "approximate": True}

    @pytest.mark.asyncio
    async def test_publish_errors_propagate(self):
        redis = AsyncMock()
        redis.xadd.side_effect = ConnectionError("refused")
        queue = RedisJobQueue(redis, prefix="vq")

        with pytest.raises(ConnectionError):
            await queue.publish("video-processing", VALID)

    @pytest.mark.asyncio
    async def test_close(self):
        redis = AsyncMock()
        await RedisJobQueue(redis).close()
        redis.aclose.assert_awaited_once()
