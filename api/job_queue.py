"""
Job queue codec and Redis Streams publisher for transcoding jobs.

A job message is a JSON object naming the video and where its raw upload
lives:

    {"videoId": "...", "inputBucket": "...", "inputObject": "...", "outputBucket": "..."}

Messages are published to one Redis stream per topic. The push subscriber
(worker/push_subscriber.py) delivers them to the worker endpoint wrapped in a
push envelope, with the message JSON base64-encoded in message.data:

    {"message": {"data": "<base64>", "messageId": "..."}, "subscription": "..."}

Delivery is at least once; the consumer must tolerate duplicates.
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError

from api.errors import BadRequest
from config import REDIS_SOCKET_CONNECT_TIMEOUT, REDIS_SOCKET_TIMEOUT, REDIS_STREAM_MAX_LEN, REDIS_STREAM_PREFIX

logger = logging.getLogger(__name__)


class JobMessage(BaseModel):
    """Transcode job payload."""

    model_config = ConfigDict(populate_by_name=True)

    video_id: StrictStr = Field(alias="videoId", min_length=1)
    input_bucket: StrictStr = Field(alias="inputBucket", min_length=1)
    input_object: StrictStr = Field(alias="inputObject", min_length=1)
    output_bucket: Optional[StrictStr] = Field(default=None, alias="outputBucket")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def _describe_validation_error(e: ValidationError) -> str:
    problems = []
    for err in e.errors():
        location = ".".join(str(part) for part in err["loc"]) or "payload"
        problems.append(f"{location}: {err['msg']}")
    return "; ".join(problems)


def parse_job_payload(payload: Any) -> JobMessage:
    """
    Validate a decoded job payload.

    Raises:
        BadRequest: If the payload is not an object or a required field is
            missing, empty or not a string
    """
    if not isinstance(payload, dict):
        raise BadRequest("Job payload must be a JSON object")
    try:
        return JobMessage.model_validate(payload)
    except ValidationError as e:
        raise BadRequest(f"Invalid job payload: {_describe_validation_error(e)}")


def parse_push_envelope(body: Any) -> Tuple[JobMessage, Optional[str]]:
    """
    Unwrap a push delivery envelope.

    Returns:
        Tuple of (job message, delivery message id or None)

    Raises:
        BadRequest: If the envelope, its base64 data or the JSON inside is malformed
    """
    if not isinstance(body, dict) or not isinstance(body.get("message"), dict):
        raise BadRequest("Push body must contain a message object")
    message = body["message"]
    data = message.get("data")
    if not isinstance(data, str) or not data:
        raise BadRequest("Push message has no data")
    try:
        decoded = base64.b64decode(data, validate=True)
        payload = json.loads(decoded)
    except (binascii.Error, ValueError) as e:
        raise BadRequest(f"Push message data is not base64-encoded JSON: {e.__class__.__name__}")
    message_id = message.get("messageId") or message.get("message_id")
    return parse_job_payload(payload), message_id


def encode_push_envelope(payload: dict, message_id: str, subscription: str) -> dict:
    """Wrap a job payload the way the push subscriber delivers it."""
    data = base64.b64encode(json.dumps(payload).encode()).decode()
    return {
        "message": {
            "data": data,
            "messageId": message_id,
            "publishTime": datetime.now(timezone.utc).isoformat(),
        },
        "subscription": subscription,
    }


def stream_name(topic: str, prefix: str = REDIS_STREAM_PREFIX) -> str:
    return f"{prefix}:{topic}"


def dead_letter_stream_name(topic: str, prefix: str = REDIS_STREAM_PREFIX) -> str:
    return f"{prefix}:{topic}:dead-letter"


class JobPublisher(Protocol):
    """Collaborator contract used by the dispatcher."""

    async def publish(self, topic: str, payload: dict) -> str: ...


def create_redis(url: str) -> Redis:
    """Create an asyncio Redis client for the given URL (connects lazily)."""
    pool = ConnectionPool.from_url(
        url,
        socket_timeout=REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
        retry_on_error=[RedisConnectionError],
        decode_responses=True,
    )
    logger.info(f"Redis client configured: {url.split('@')[-1]}")
    return Redis(connection_pool=pool)


class RedisJobQueue:
    """JobPublisher backed by Redis Streams (one stream per topic)."""

    def __init__(self, redis: Redis, prefix: str = REDIS_STREAM_PREFIX, max_len: int = REDIS_STREAM_MAX_LEN):
        self.redis = redis
        self.prefix = prefix
        self.max_len = max_len

    async def publish(self, topic: str, payload: dict) -> str:
        """
        Append a job to the topic's stream.

        Returns:
            The stream entry id

        Raises:
            redis.exceptions.RedisError: If the publish fails
        """
        name = stream_name(topic, self.prefix)
        message_id = await self.redis.xadd(
            name,
            {
                "data": json.dumps(payload),
                "published_at": datetime.now(timezone.utc).isoformat(),
            },
            maxlen=self.max_len,
            approximate=True,
        )
        logger.debug(f"Published job for video {payload.get('videoId')} to {name} ({message_id})")
        return message_id

    async def close(self) -> None:
        await self.redis.aclose()
