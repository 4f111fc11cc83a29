"""Log-Stream adapter over Apache Kafka, built on ``aiokafka``.

State is one producer and one consumer bound to ``kafka.group_id``, both
started by ``connect``. With ``kafka.create_topics`` enabled an admin client
is started as well and each topic is created once, on first publish;
otherwise topic creation is left to the cluster's auto-create setting.

``consume`` points the single consumer at the requested topic and polls with
``getmany`` until the window elapses or the log is drained. Offsets are
committed for returned records only, so switching topics between calls does
not lose anything. Calls are serialized on the consumer.

Kafka is an append-only log: a specific record cannot be deleted. ``remove``
is therefore a guaranteed no-op with a capability warning, and a later
``consume`` from another group still sees the record.
"""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, TopicAlreadyExistsError

from broker_gateway.base import MessageBroker
from broker_gateway.codec import decode, encode_bytes
from broker_gateway.errors import BrokerConnectionError, BrokerError, ConsumeError, PublishError
from broker_gateway.models import BrokerCapabilities, Delivery
from broker_gateway.resources import TopicResources


class KafkaBroker(MessageBroker):
    """Kafka topics behind the uniform broker contract."""

    name = "kafka"
    capabilities = BrokerCapabilities(
        supports_targeted_delete=False,
        remove_cost="n/a",
        consume_model="stream",
    )

    def __init__(self, config, logger=None) -> None:
        super().__init__(config, logger)
        self.producer: Optional[AIOKafkaProducer] = None
        self.consumer: Optional[AIOKafkaConsumer] = None
        self.admin: Optional[AIOKafkaAdminClient] = None
        self._topics: TopicResources[str] = TopicResources(self.name, "topic")
        self._subscription: Optional[str] = None
        self._connect_lock = asyncio.Lock()
        self._consume_lock = asyncio.Lock()

    def _bootstrap_servers(self) -> List[str]:
        brokers = self._require("kafka.brokers")
        if isinstance(brokers, str):
            brokers = [b.strip() for b in brokers.split(",") if b.strip()]
        return list(brokers)

    async def connect(self) -> None:
        async with self._connect_lock:
            if self._connected:
                return
            servers = self._bootstrap_servers()
            group_id = self._require("kafka.group_id")
            client_id = self._option("kafka.client_id", "broker-gateway")
            self.logger.info("Connecting Kafka producer and consumer.", extra={"broker": self.name})

            producer = AIOKafkaProducer(bootstrap_servers=servers, client_id=client_id)
            consumer = AIOKafkaConsumer(
                bootstrap_servers=servers,
                client_id=client_id,
                group_id=group_id,
                auto_offset_reset=self._option("kafka.auto_offset_reset", "earliest"),
                enable_auto_commit=False,
            )
            admin = None
            if self._option("kafka.create_topics", False):
                admin = AIOKafkaAdminClient(bootstrap_servers=servers, client_id=client_id)
            started: list[Any] = []
            try:
                for client in (producer, consumer, admin):
                    if client is None:
                        continue
                    await client.start()
                    started.append(client)
            except Exception as exc:  # noqa: BLE001
                for client in reversed(started):
                    await self._stop(client)
                raise BrokerConnectionError(f"could not connect to Kafka at {servers}: {exc}", broker=self.name, original_error=exc) from exc

            self.producer, self.consumer, self.admin = producer, consumer, admin
            self._connected = True
            self.logger.info("Kafka producer and consumer connected.", extra={"broker": self.name})

    async def _stop(self, client: Any) -> None:
        if isinstance(client, AIOKafkaAdminClient):
            await client.close()
        else:
            await client.stop()

    async def disconnect(self) -> None:
        async with self._connect_lock:
            self.logger.info("Disconnecting Kafka producer and consumer.", extra={"broker": self.name})
            clients = [c for c in (self.consumer, self.producer, self.admin) if c is not None]
            self.producer = self.consumer = self.admin = None
            self._subscription = None
            self._connected = False
            self._topics.clear()
            errors: list[Exception] = []
            for client in clients:
                try:
                    await self._stop(client)
                except Exception as exc:  # noqa: BLE001
                    errors.append(exc)
            if errors:
                raise BrokerConnectionError(
                    f"error while stopping Kafka clients: {errors[0]}", broker=self.name, original_error=errors[0]
                ) from errors[0]
            self.logger.info("Kafka producer and consumer disconnected.", extra={"broker": self.name})

    # -------------------------
    # Topics
    # -------------------------

    async def _create_topic(self, topic: str) -> str:
        assert self.admin is not None
        new_topic = NewTopic(
            name=topic,
            num_partitions=int(self._option("kafka.num_partitions", 1)),
            replication_factor=int(self._option("kafka.replication_factor", 1)),
        )
        try:
            await self.admin.create_topics([new_topic])
            self.logger.info("Created Kafka topic: %s", topic, extra={"broker": self.name, "topic": topic})
        except TopicAlreadyExistsError:
            pass
        return topic

    # -------------------------
    # Messaging
    # -------------------------

    async def publish(self, topic: str, message: Any) -> None:
        self._ensure_connected(PublishError)
        value = encode_bytes(message, broker=self.name)
        self.logger.info("Publishing message to topic: %s", topic, extra={"broker": self.name, "topic": topic})
        try:
            # without an admin client the cluster's auto-create setting applies
            if self.admin is not None:
                await self._topics.get_or_create(topic, self._create_topic)
            assert self.producer is not None
            await self.producer.send_and_wait(topic, value=value)
        except BrokerError:
            raise
        except KafkaError as exc:
            raise PublishError(f"Kafka rejected publish to {topic}: {exc}", broker=self.name, original_error=exc) from exc
        self.logger.info("Message published to topic: %s", topic, extra={"broker": self.name, "topic": topic})

    async def consume(
        self,
        topic: str,
        timeout: Optional[float] = None,
        max_messages: Optional[int] = None,
    ) -> List[Delivery]:
        self._ensure_connected(ConsumeError)
        window = self._window(timeout, float(self._option("kafka.consume_timeout", 5.0)))
        limit = max_messages or int(self._option("kafka.max_batch", 500))
        self.logger.info("Consuming messages from topic: %s", topic, extra={"broker": self.name, "topic": topic})

        batch: List[Delivery] = []
        async with self._consume_lock:
            assert self.consumer is not None
            try:
                if self._subscription != topic:
                    self.consumer.subscribe(topics=[topic])
                    self._subscription = topic
                loop = asyncio.get_running_loop()
                deadline = loop.time() + window
                polls = 0
                while len(batch) < limit:
                    remaining = deadline - loop.time()
                    if polls and remaining <= 0:
                        break
                    records = await self.consumer.getmany(
                        timeout_ms=max(int(remaining * 1000), 0),
                        max_records=limit - len(batch),
                    )
                    polls += 1
                    polled = [record for partition in records.values() for record in partition]
                    if not polled:
                        if batch:
                            break
                        continue
                    for record in polled:
                        batch.append(self._to_delivery(topic, record))
                if batch:
                    await self.consumer.commit()
            except KafkaError as exc:
                raise ConsumeError(f"Kafka consume from {topic} failed: {exc}", broker=self.name, original_error=exc) from exc

        self.logger.info(
            "Consumed %d messages from topic: %s", len(batch), topic,
            extra={"broker": self.name, "topic": topic},
        )
        return batch

    def _to_delivery(self, topic: str, record: Any) -> Delivery:
        try:
            payload = decode(record.value)
        except ValueError:
            self.logger.error(
                "Undecodable record at %s:%s on topic %s", record.partition, record.offset, topic,
                extra={"broker": self.name, "topic": topic},
            )
            payload = record.value
        return Delivery(
            topic=topic,
            payload=payload,
            ack=self._ack_record(topic, f"{record.partition}:{record.offset}"),
            message_id=f"{record.topic}:{record.partition}:{record.offset}",
            attributes={"partition": record.partition, "offset": record.offset, "timestamp": record.timestamp},
        )

    async def remove(self, topic: str, message: Any) -> bool:
        self._warn_unsupported(
            "remove",
            topic,
            "Kafka does not support direct removal of messages from an append-only log",
        )
        return False
