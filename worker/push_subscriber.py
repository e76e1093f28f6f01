"""
Push delivery for the job queue.

Reads jobs from the topic's Redis stream through a consumer group and POSTs
each one to the worker endpoint as a push envelope, presenting the shared
bearer credential. Delivery is at least once:

- a 2xx answer acknowledges the entry
- any other answer (or a connection error) leaves it pending; once it has
  been idle for the redelivery delay it is claimed and pushed again
- after the maximum number of deliveries it is copied to the dead-letter
  stream and acknowledged

Run with: python -m worker.push_subscriber
"""

import asyncio
import json
import logging
import os
import signal
import socket
import sys
from datetime import datetime, timezone
from typing import Dict, Optional, Set

import httpx
from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from api.common import configure_logging
from api.job_queue import create_redis, dead_letter_stream_name, encode_push_envelope, stream_name
from config import (
    JOB_VERIFICATION_TOKEN,
    LOG_LEVEL,
    PROCESSING_TOPIC,
    PUSH_ENDPOINT,
    PUSH_MAX_DELIVERY_ATTEMPTS,
    PUSH_MAX_IN_FLIGHT,
    PUSH_REDELIVERY_DELAY_MS,
    PUSH_REDELIVERY_MARGIN_MS,
    PUSH_TIMEOUT,
    REDIS_CONSUMER_BLOCK_MS,
    REDIS_CONSUMER_GROUP,
    REDIS_STREAM_PREFIX,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

DEAD_LETTER_MAX_LEN = 1000
ERROR_POLL_INTERVAL = 1.0


class PushSubscriber:
    """Consumer-group loop pushing stream entries to an HTTP endpoint."""

    def __init__(
        self,
        redis: Redis,
        http: httpx.AsyncClient,
        endpoint: str = PUSH_ENDPOINT,
        topic: str = PROCESSING_TOPIC,
        group: str = REDIS_CONSUMER_GROUP,
        consumer_name: Optional[str] = None,
        token: str = JOB_VERIFICATION_TOKEN,
        prefix: str = REDIS_STREAM_PREFIX,
        redelivery_delay_ms: int = PUSH_REDELIVERY_DELAY_MS,
        push_timeout: float = PUSH_TIMEOUT,
        max_attempts: int = PUSH_MAX_DELIVERY_ATTEMPTS,
        max_in_flight: int = PUSH_MAX_IN_FLIGHT,
        block_ms: int = REDIS_CONSUMER_BLOCK_MS,
    ):
        self.redis = redis
        self.http = http
        self.endpoint = endpoint
        self.group = group
        self.consumer_name = consumer_name or f"push-{socket.gethostname()}-{os.getpid()}"
        self.token = token
        self.stream = stream_name(topic, prefix)
        self.dead_letter_stream = dead_letter_stream_name(topic, prefix)
        self.subscription = f"{self.stream}:{group}"
        push_timeout_ms = int(push_timeout * 1000)
        if redelivery_delay_ms <= push_timeout_ms:
            logger.warning(
                f"Redelivery delay {redelivery_delay_ms}ms does not exceed the push timeout {push_timeout_ms}ms, "
                f"using {push_timeout_ms + PUSH_REDELIVERY_MARGIN_MS}ms"
            )
            redelivery_delay_ms = push_timeout_ms + PUSH_REDELIVERY_MARGIN_MS
        self.redelivery_delay_ms = redelivery_delay_ms
        self.max_attempts = max_attempts
        self.max_in_flight = max_in_flight
        self.block_ms = block_ms
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._stopping = asyncio.Event()

    async def ensure_group(self) -> None:
        """Create the consumer group (and the stream) if missing."""
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info(f"Created consumer group {self.group} on {self.stream}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            # Group already exists, that's fine

    def stop(self) -> None:
        self._stopping.set()

    # =========================================================================
    # Delivery
    # =========================================================================

    async def deliver(self, message_id: str, fields: Dict[str, str]) -> bool:
        """
        Push one stream entry to the endpoint.

        Returns:
            True if the endpoint answered 2xx and the entry was acknowledged
        """
        try:
            payload = json.loads(fields.get("data") or "")
        except ValueError:
            await self.dead_letter(message_id, "Stream entry data is not JSON")
            return False

        envelope = encode_push_envelope(payload, message_id, self.subscription)
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = await self.http.post(self.endpoint, json=envelope, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Push of {message_id} failed: {e.__class__.__name__}: {e}")
            return False

        if response.is_success:
            await self.redis.xack(self.stream, self.group, message_id)
            logger.info(f"Delivered {message_id} (video {payload.get('videoId')}): {response.status_code}")
            return True

        logger.warning(
            f"Push of {message_id} (video {payload.get('videoId')}) answered {response.status_code}, "
            f"will redeliver after {self.redelivery_delay_ms}ms"
        )
        return False

    async def dead_letter(self, message_id: str, reason: str) -> None:
        """Copy an entry to the dead-letter stream and acknowledge it."""
        entries = await self.redis.xrange(self.stream, min=message_id, max=message_id)
        fields = dict(entries[0][1]) if entries else {}
        fields.update(
            {
                "error": reason[:500],
                "failed_at": datetime.now(timezone.utc).isoformat(),
                "original_stream": self.stream,
                "original_id": message_id,
            }
        )
        await self.redis.xadd(self.dead_letter_stream, fields, maxlen=DEAD_LETTER_MAX_LEN, approximate=True)
        await self.redis.xack(self.stream, self.group, message_id)
        logger.error(f"Entry {message_id} moved to {self.dead_letter_stream}: {reason}")

    def _start(self, message_id: str, fields: Dict[str, str]) -> None:
        task = asyncio.create_task(self.deliver(message_id, fields))
        self._in_flight[message_id] = task
        task.add_done_callback(lambda t, mid=message_id: self._finished(mid, t))

    def _finished(self, message_id: str, task: asyncio.Task) -> None:
        self._in_flight.pop(message_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Delivery of {message_id} raised: {task.exception()}")

    @property
    def free_slots(self) -> int:
        return self.max_in_flight - len(self._in_flight)

    # =========================================================================
    # Polling
    # =========================================================================

    async def redeliver_pending(self) -> int:
        """
        Claim and push again entries whose last delivery failed.

        Entries still being pushed by this process are left alone; the
        redelivery delay exceeds the push timeout, so an entry another
        subscriber is pushing never looks idle. Returns the number of
        deliveries started.
        """
        pending = await self.redis.xpending_range(
            self.stream, self.group, min="-", max="+", count=self.max_in_flight + 10
        )
        started = 0
        for entry in pending:
            message_id = entry["message_id"]
            if message_id in self._in_flight or entry["time_since_delivered"] < self.redelivery_delay_ms:
                continue
            if entry["times_delivered"] >= self.max_attempts:
                await self.dead_letter(message_id, f"Not acknowledged after {entry['times_delivered']} deliveries")
                continue
            if self.free_slots <= 0:
                break
            claimed = await self.redis.xclaim(
                self.stream, self.group, self.consumer_name, self.redelivery_delay_ms, [message_id]
            )
            for claimed_id, fields in claimed:
                if not fields:
                    # Entry trimmed from the stream; nothing left to deliver
                    await self.redis.xack(self.stream, self.group, claimed_id)
                    continue
                logger.info(f"Redelivering {claimed_id} (delivery {entry['times_delivered'] + 1})")
                self._start(claimed_id, fields)
                started += 1
        return started

    async def read_new(self) -> int:
        """Read new entries for the free delivery slots. Returns the number started."""
        if self.free_slots <= 0:
            return 0
        messages = await self.redis.xreadgroup(
            self.group,
            self.consumer_name,
            {self.stream: ">"},
            count=self.free_slots,
            block=self.block_ms,
        )
        started = 0
        # messages format: [[stream_name, [(message_id, data), ...]]]
        for _stream, entries in messages or []:
            for message_id, fields in entries:
                self._start(message_id, fields)
                started += 1
        return started

    async def _wait_for_slot(self) -> None:
        if self.free_slots > 0 or not self._in_flight:
            return
        # Wake up periodically so pending entries keep getting checked
        await asyncio.wait(
            set(self._in_flight.values()),
            timeout=self.block_ms / 1000,
            return_when=asyncio.FIRST_COMPLETED,
        )

    async def run(self) -> None:
        """Deliver until stop() is called, then cancel pushes still in flight."""
        await self.ensure_group()
        logger.info(f"Pushing {self.stream} to {self.endpoint} as {self.consumer_name}")
        try:
            while not self._stopping.is_set():
                try:
                    await self.redeliver_pending()
                    await self._wait_for_slot()
                    await self.read_new()
                except RedisError as e:
                    logger.error(f"Redis error in push loop: {e}")
                    await asyncio.sleep(ERROR_POLL_INTERVAL)
        finally:
            tasks: Set[asyncio.Task] = set(self._in_flight.values())
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if tasks:
                logger.info(f"Cancelled {len(tasks)} in-flight deliveries; they stay pending for redelivery")


async def _run_subscriber() -> int:
    if not REDIS_URL:
        logger.error("VIDQUEUE_REDIS_URL is required for push delivery")
        return 1

    redis = create_redis(REDIS_URL)
    timeout = httpx.Timeout(PUSH_TIMEOUT, connect=10.0)
    async with httpx.AsyncClient(timeout=timeout) as http:
        subscriber = PushSubscriber(redis, http)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, subscriber.stop)
        try:
            await subscriber.run()
        finally:
            await redis.aclose()
    return 0


def main():
    """Entry point for the push subscriber."""
    configure_logging(LOG_LEVEL)
    sys.exit(asyncio.run(_run_subscriber()))


if __name__ == "__main__":
    main()
