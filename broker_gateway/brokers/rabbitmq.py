"""AMQP-Queue adapter over RabbitMQ, built on ``aio_pika``.

State is one robust connection and one channel, both opened by ``connect``.
Queues are declared lazily, once per topic, and published to through the
default exchange with the topic as routing key.

``consume`` drains the queue with ``basic.get`` until it is empty, the batch is
full, or the window elapses. Each message is acked only after it has been
decoded and captured in the batch; a connection drop mid-batch leaves the
unacked remainder for redelivery on the next ``consume``.

RabbitMQ has no primitive to delete one specific unconsumed message and
messages are already acked when consumed, so ``remove`` is a no-op with a
capability warning.

Example:
    >>> broker = RabbitMQBroker(ConfigService.from_mapping({"rabbitmq": {"url": "amqp://localhost"}}))
    >>> await broker.connect()
    >>> await broker.publish("orders", {"id": 1})
    >>> [d.payload for d in await broker.consume("orders")]
    [{'id': 1}]
"""

from __future__ import annotations

import asyncio
import ssl
from typing import Any, List, Optional
from urllib.parse import urlsplit

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractQueue, AbstractRobustConnection

from broker_gateway.base import MessageBroker
from broker_gateway.codec import decode, encode_bytes
from broker_gateway.errors import BrokerConnectionError, BrokerError, ConsumeError, PublishError
from broker_gateway.models import BrokerCapabilities, Delivery
from broker_gateway.resources import TopicResources
from broker_gateway.tracing import inject_headers


class RabbitMQBroker(MessageBroker):
    """Classic RabbitMQ queues behind the uniform broker contract."""

    name = "rabbitmq"
    capabilities = BrokerCapabilities(
        supports_targeted_delete=False,
        remove_cost="n/a",
        consume_model="poll",
    )

    def __init__(self, config, logger=None) -> None:
        super().__init__(config, logger)
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self._queues: TopicResources[AbstractQueue] = TopicResources(self.name, "queue")
        self._connect_lock = asyncio.Lock()

    # -------------------------
    # Connection lifecycle
    # -------------------------

    def _build_ssl_context(self, url: str) -> Optional[ssl.SSLContext]:
        """Return an ``ssl.SSLContext`` for TLS/mTLS if configured, else ``None``.

        When verification is disabled (dev/local), hostname checks and
        certificate verification are relaxed.
        """
        ca_path = self._option("rabbitmq.ssl_ca_path", "")
        cert_path = self._option("rabbitmq.ssl_cert_path", "")
        key_path = self._option("rabbitmq.ssl_key_path", "")
        wants_tls = urlsplit(url).scheme.lower() == "amqps" or any([ca_path, cert_path, key_path])
        if not wants_tls:
            return None

        context = ssl.create_default_context(cafile=ca_path or None)
        if cert_path and key_path:
            context.load_cert_chain(cert_path, key_path)

        if not self._option("rabbitmq.ssl_verify", True):
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        else:
            context.check_hostname = bool(self._option("rabbitmq.ssl_check_hostname", True))
            context.verify_mode = ssl.CERT_REQUIRED
        return context

    async def _open_connection(self, url: str) -> AbstractRobustConnection:
        """Open a robust connection with bounded exponential backoff.

        RabbitMQ may not be immediately ready in CI/local; a bounded retry loop
        reduces flakiness. Attempts and delays come from ``rabbitmq.connect_*``.
        """
        try:
            ssl_context = self._build_ssl_context(url)
        except (OSError, ssl.SSLError) as exc:
            raise BrokerConnectionError(f"invalid RabbitMQ TLS configuration: {exc}", broker=self.name, original_error=exc) from exc

        max_attempts = max(int(self._option("rabbitmq.connect_attempts", 12)), 1)
        delay_ms = int(self._option("rabbitmq.connect_base_delay_ms", 500))
        max_delay_ms = int(self._option("rabbitmq.connect_max_delay_ms", 3000))

        last_exc: Exception | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                if ssl_context is not None:
                    # Underlying aiormq expects SSLOptions-type; our context aligns but stubs complain
                    return await aio_pika.connect_robust(url, ssl=True, ssl_context=ssl_context)  # type: ignore[arg-type]
                return await aio_pika.connect_robust(url)
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                self.logger.warning(
                    "RabbitMQ connect attempt %d/%d failed: %s", attempt, max_attempts, exc,
                    extra={"broker": self.name},
                )
                if attempt == max_attempts:
                    break
                await asyncio.sleep(delay_ms / 1000.0)
                delay_ms = min(int(delay_ms * 2), max_delay_ms)
        assert last_exc is not None
        raise BrokerConnectionError(
            f"could not connect to RabbitMQ after {max_attempts} attempts: {last_exc}",
            broker=self.name,
            original_error=last_exc,
        ) from last_exc

    async def connect(self) -> None:
        async with self._connect_lock:
            if self._connected:
                return
            url = self._require("rabbitmq.url")
            self.logger.info("Connecting to RabbitMQ.", extra={"broker": self.name})
            connection = await self._open_connection(url)
            try:
                channel = await connection.channel()
                await channel.set_qos(prefetch_count=int(self._option("rabbitmq.prefetch_count", 10)))
            except Exception as exc:  # noqa: BLE001
                await connection.close()
                raise BrokerConnectionError(f"could not open RabbitMQ channel: {exc}", broker=self.name, original_error=exc) from exc
            self.connection = connection
            self.channel = channel
            self._connected = True
            self.logger.info("Connected to RabbitMQ.", extra={"broker": self.name})

    async def disconnect(self) -> None:
        async with self._connect_lock:
            self.logger.info("Disconnecting from RabbitMQ.", extra={"broker": self.name})
            channel, connection = self.channel, self.connection
            self.channel = None
            self.connection = None
            self._connected = False
            self._queues.clear()
            try:
                if channel is not None and not channel.is_closed:
                    await channel.close()
                if connection is not None and not connection.is_closed:
                    await connection.close()
            except Exception as exc:  # noqa: BLE001
                raise BrokerConnectionError(f"error while closing RabbitMQ connection: {exc}", broker=self.name, original_error=exc) from exc
            self.logger.info("Disconnected from RabbitMQ.", extra={"broker": self.name})

    # -------------------------
    # Topology
    # -------------------------

    async def _declare(self, topic: str) -> AbstractQueue:
        assert self.channel is not None
        durable = bool(self._option("rabbitmq.durable", True))
        queue = await self.channel.declare_queue(topic, durable=durable)
        self.logger.info("Declared queue: %s", topic, extra={"broker": self.name, "topic": topic})
        return queue

    async def _queue(self, topic: str) -> AbstractQueue:
        return await self._queues.get_or_create(topic, self._declare)

    # -------------------------
    # Messaging
    # -------------------------

    async def publish(self, topic: str, message: Any) -> None:
        self._ensure_connected(PublishError)
        body = encode_bytes(message, broker=self.name)
        self.logger.info("Publishing message to queue: %s", topic, extra={"broker": self.name, "topic": topic})
        try:
            await self._queue(topic)
            assert self.channel is not None
            amqp_message = Message(
                body=body,
                content_type="application/json",
                delivery_mode=DeliveryMode.PERSISTENT,
                headers=inject_headers(),
            )
            await self.channel.default_exchange.publish(amqp_message, routing_key=topic)
        except BrokerError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PublishError(f"RabbitMQ rejected publish to {topic}: {exc}", broker=self.name, original_error=exc) from exc
        self.logger.info("Message published to queue: %s", topic, extra={"broker": self.name, "topic": topic})

    async def consume(
        self,
        topic: str,
        timeout: Optional[float] = None,
        max_messages: Optional[int] = None,
    ) -> List[Delivery]:
        self._ensure_connected(ConsumeError)
        window = self._window(timeout, float(self._option("rabbitmq.consume_timeout", 5.0)))
        limit = max_messages or int(self._option("rabbitmq.max_batch", 100))
        self.logger.info("Consuming messages from queue: %s", topic, extra={"broker": self.name, "topic": topic})

        batch: List[Delivery] = []
        loop = asyncio.get_running_loop()
        deadline = loop.time() + window
        fetched = 0
        try:
            queue = await self._queue(topic)
            while len(batch) < limit:
                remaining = deadline - loop.time()
                if fetched and remaining <= 0:
                    break
                incoming = await queue.get(no_ack=False, fail=False, timeout=max(remaining, 0.5))
                fetched += 1
                if incoming is None:
                    break
                try:
                    payload = decode(incoming.body)
                except ValueError as exc:
                    self.logger.error(
                        "Rejecting undecodable message on queue %s: %s", topic, exc,
                        extra={"broker": self.name, "topic": topic},
                    )
                    await incoming.reject(requeue=False)
                    continue
                batch.append(
                    Delivery(
                        topic=topic,
                        payload=payload,
                        ack=self._ack_record(topic, incoming.delivery_tag),
                        message_id=incoming.message_id,
                        attributes={"headers": dict(incoming.headers or {}), "redelivered": bool(incoming.redelivered)},
                    )
                )
                await incoming.ack()
        except BrokerError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ConsumeError(f"RabbitMQ consume from {topic} failed: {exc}", broker=self.name, original_error=exc) from exc

        self.logger.info(
            "Consumed %d messages from queue: %s", len(batch), topic,
            extra={"broker": self.name, "topic": topic},
        )
        return batch

    async def remove(self, topic: str, message: Any) -> bool:
        self._warn_unsupported(
            "remove",
            topic,
            "RabbitMQ does not support direct removal of messages; consumed messages are already acknowledged",
        )
        return False
