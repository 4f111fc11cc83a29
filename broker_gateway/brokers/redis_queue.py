"""Redis-Job-Queue adapter, built on ``arq``.

Unlike the other adapters, resources here are per topic. The first publish to
a topic creates that topic's queue (an ``ArqRedis`` pool whose default queue
is the topic's sorted set); the first consume creates its worker. arq keeps
deferred and retried jobs in the same sorted set, scored by run time, so the
queue also acts as the topic's scheduler and no separate scheduler process is
needed. Creation goes through ``TopicResources``: N concurrent first publishes
create exactly one queue.

Job queues are event driven rather than poll based. ``consume`` bridges the
two: it runs the topic's worker in burst mode for a bounded window, the
delivery job pushes every completed payload into the topic's completion
buffer, and the buffer is drained into the returned batch. Jobs still running
when the window closes land in the buffer and are returned by the next call.

``remove`` with a ``Delivery``/``AckRecord`` deletes that job id directly.
With a raw envelope it scans every queued job of the topic and deletes the
first whose payload is equal by value. That scan is O(queue depth), unlike
the O(1) receipt-handle delete of the SQS adapter. ``remove`` returns
``False`` when no queued job matched or the job had already left the queue.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from arq.connections import ArqRedis, RedisSettings, create_pool
from arq.constants import job_key_prefix, result_key_prefix
from arq.worker import Worker, func
from redis.exceptions import RedisError

from broker_gateway.base import MessageBroker
from broker_gateway.codec import decode, encode_text
from broker_gateway.errors import BrokerConnectionError, BrokerError, ConsumeError, PublishError, RemoveError
from broker_gateway.models import BrokerCapabilities, Delivery
from broker_gateway.resources import TopicResources


def serialize_job(data: Dict[str, Any]) -> bytes:
    """JSON job serializer so queued jobs stay readable outside Python."""
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


def deserialize_job(raw: bytes) -> Dict[str, Any]:
    return json.loads(raw)


@dataclass
class TopicWorker:
    """A topic's arq worker and the buffer its delivery job fills."""
    worker: Worker
    completed: "asyncio.Queue[Delivery]"
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RedisQueueBroker(MessageBroker):
    """Redis-backed job queues behind the uniform broker contract."""

    name = "redis"
    capabilities = BrokerCapabilities(
        supports_targeted_delete=True,
        remove_cost="O(queue depth)",
        consume_model="event",
    )

    def __init__(self, config, logger=None) -> None:
        super().__init__(config, logger)
        self.redis_settings: Optional[RedisSettings] = None
        self._control: Optional[ArqRedis] = None
        self._queues: TopicResources[ArqRedis] = TopicResources(self.name, "queue")
        self._workers: TopicResources[TopicWorker] = TopicResources(self.name, "worker")
        self._connect_lock = asyncio.Lock()

    @property
    def job_name(self) -> str:
        return str(self._option("redis.job_name", "deliver"))

    # -------------------------
    # Connection lifecycle
    # -------------------------

    async def connect(self) -> None:
        async with self._connect_lock:
            if self._connected:
                return
            url = self._require("redis.url")
            self.logger.info("Connecting to Redis job queue.", extra={"broker": self.name})
            try:
                settings = RedisSettings.from_dsn(url)
                settings.conn_retries = int(self._option("redis.conn_retries", 0))
                control = await create_pool(settings)
                await control.ping()
            except (RedisError, OSError, ValueError) as exc:
                raise BrokerConnectionError(f"could not connect to Redis: {exc}", broker=self.name, original_error=exc) from exc
            self.redis_settings = settings
            self._control = control
            self._connected = True
            self.logger.info("Connected to Redis job queue.", extra={"broker": self.name})

    async def disconnect(self) -> None:
        async with self._connect_lock:
            self.logger.info("Disconnecting from Redis job queue.", extra={"broker": self.name})
            workers = self._workers.clear()
            queues = self._queues.clear()
            control, self._control = self._control, None
            self._connected = False
            errors: list[Exception] = []
            for topic_worker in workers.values():
                try:
                    await topic_worker.worker.close()
                except (RedisError, OSError) as exc:
                    errors.append(exc)
            for pool in [*queues.values(), *([control] if control is not None else [])]:
                try:
                    await pool.aclose()
                except (RedisError, OSError) as exc:
                    errors.append(exc)
            if errors:
                raise BrokerConnectionError(
                    f"error while closing Redis connections: {errors[0]}", broker=self.name, original_error=errors[0]
                ) from errors[0]
            self.logger.info("Disconnected from Redis job queue.", extra={"broker": self.name})

    # -------------------------
    # Per-topic resources
    # -------------------------

    async def _create_queue(self, topic: str) -> ArqRedis:
        pool = await create_pool(
            self.redis_settings,
            default_queue_name=topic,
            job_serializer=serialize_job,
            job_deserializer=deserialize_job,
        )
        self.logger.info("Created job queue for topic: %s", topic, extra={"broker": self.name, "topic": topic})
        return pool

    async def _queue(self, topic: str) -> ArqRedis:
        return await self._queues.get_or_create(topic, self._create_queue)

    async def _create_worker(self, topic: str) -> TopicWorker:
        completed: asyncio.Queue[Delivery] = asyncio.Queue()
        ack_record = self._ack_record

        async def deliver(ctx: Dict[str, Any], message: Any) -> Any:
            job_id = ctx["job_id"]
            await completed.put(
                Delivery(
                    topic=topic,
                    payload=message,
                    ack=ack_record(topic, job_id),
                    message_id=job_id,
                    attributes={"job_try": ctx.get("job_try"), "enqueue_time": str(ctx.get("enqueue_time"))},
                )
            )
            return message

        worker = Worker(
            functions=[func(deliver, name=self.job_name)],
            queue_name=topic,
            redis_settings=self.redis_settings,
            burst=True,
            handle_signals=False,
            max_jobs=int(self._option("redis.max_jobs", 10)),
            poll_delay=float(self._option("redis.poll_delay", 0.1)),
            job_serializer=serialize_job,
            job_deserializer=deserialize_job,
        )
        self.logger.info("Created worker for topic: %s", topic, extra={"broker": self.name, "topic": topic})
        return TopicWorker(worker=worker, completed=completed)

    # -------------------------
    # Messaging
    # -------------------------

    async def publish(self, topic: str, message: Any) -> None:
        self._ensure_connected(PublishError)
        encode_text(message, broker=self.name)
        self.logger.info("Publishing job to queue: %s", topic, extra={"broker": self.name, "topic": topic})
        try:
            queue = await self._queue(topic)
            await queue.enqueue_job(self.job_name, message, _queue_name=topic)
        except (RedisError, OSError) as exc:
            raise PublishError(f"Redis rejected publish to {topic}: {exc}", broker=self.name, original_error=exc) from exc
        self.logger.info("Job published to queue: %s", topic, extra={"broker": self.name, "topic": topic})

    async def consume(
        self,
        topic: str,
        timeout: Optional[float] = None,
        max_messages: Optional[int] = None,
    ) -> List[Delivery]:
        self._ensure_connected(ConsumeError)
        window = self._window(timeout, float(self._option("redis.consume_timeout", 5.0)))
        self.logger.info("Consuming jobs from queue: %s", topic, extra={"broker": self.name, "topic": topic})
        try:
            topic_worker = await self._workers.get_or_create(topic, self._create_worker)
            async with topic_worker.lock:
                try:
                    await asyncio.wait_for(topic_worker.worker.main(), timeout=window)
                except asyncio.TimeoutError:
                    pass
        except (RedisError, OSError) as exc:
            raise ConsumeError(f"Redis consume from {topic} failed: {exc}", broker=self.name, original_error=exc) from exc

        batch: List[Delivery] = []
        while not topic_worker.completed.empty():
            if max_messages is not None and len(batch) >= max_messages:
                break
            batch.append(topic_worker.completed.get_nowait())
        self.logger.info(
            "Consumed %d jobs from queue: %s", len(batch), topic,
            extra={"broker": self.name, "topic": topic},
        )
        return batch

    async def _find_job_id(self, queue: ArqRedis, topic: str, message: Any) -> Optional[str]:
        """Scan the queued jobs of ``topic`` for one whose payload equals ``message``."""
        wanted = decode(encode_text(message, broker=self.name))
        for job in await queue.queued_jobs(queue_name=topic):
            if job.function == self.job_name and job.args and job.args[0] == wanted:
                return job.job_id
        return None

    async def remove(self, topic: str, message: Any) -> bool:
        self._ensure_connected(RemoveError)
        ack = self._ack_of(message)
        if ack is not None and (ack.broker != self.name or ack.topic != topic):
            raise RemoveError(
                f"acknowledgment for {ack.broker}:{ack.topic} cannot remove a job from redis:{topic}",
                broker=self.name,
            )
        self.logger.info("Removing job from queue: %s", topic, extra={"broker": self.name, "topic": topic})
        try:
            queue = await self._queue(topic)
            if ack is not None:
                job_id: Optional[str] = ack.token
            else:
                job_id = await self._find_job_id(queue, topic, message)
            if job_id is None:
                self.logger.info(
                    "No queued job matched the message on queue: %s", topic,
                    extra={"broker": self.name, "topic": topic},
                )
                return False
            async with queue.pipeline(transaction=True) as pipe:
                pipe.zrem(topic, job_id)
                pipe.delete(job_key_prefix + job_id, result_key_prefix + job_id)
                removed, _ = await pipe.execute()
        except BrokerError:
            raise
        except (RedisError, OSError) as exc:
            raise RemoveError(f"Redis rejected delete on {topic}: {exc}", broker=self.name, original_error=exc) from exc
        if not removed:
            self.logger.info(
                "Job %s was no longer queued on queue: %s", job_id, topic,
                extra={"broker": self.name, "topic": topic},
            )
            return False
        self.logger.info("Job %s removed from queue: %s", job_id, topic, extra={"broker": self.name, "topic": topic})
        return True
