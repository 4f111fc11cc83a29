import asyncio
import logging
from types import SimpleNamespace

import pytest
from aiokafka.errors import KafkaConnectionError, TopicAlreadyExistsError
from aiokafka.structs import TopicPartition
from prometheus_client import REGISTRY

from broker_gateway.brokers import kafka
from broker_gateway.brokers.kafka import KafkaBroker
from broker_gateway.errors import BrokerConnectionError, ConsumeError, PublishError


class FakeCluster:
    def __init__(self):
        self.logs = {}
        self.committed = {}
        self.producers = []
        self.consumers = []
        self.fail_consumer_start = False
        self.existing_topics = set()
        self.created_topics = []
        self.admins = []
        self.fail_admin_start = False


class FakeProducer:
    def __init__(self, cluster, **kwargs):
        self.cluster = cluster
        self.kwargs = kwargs
        self.started = False
        self.stopped = False
        cluster.producers.append(self)

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def send_and_wait(self, topic, value=None):
        assert isinstance(value, bytes)
        self.cluster.logs.setdefault(topic, []).append(value)


class FakeConsumer:
    def __init__(self, cluster, **kwargs):
        self.cluster = cluster
        self.kwargs = kwargs
        self.group_id = kwargs["group_id"]
        self.subscriptions = []
        self.positions = {}
        self.stopped = False
        cluster.consumers.append(self)

    async def start(self):
        if self.cluster.fail_consumer_start:
            raise KafkaConnectionError("no brokers available")

    async def stop(self):
        self.stopped = True

    def subscribe(self, topics):
        self.subscriptions.append(list(topics))

    async def getmany(self, timeout_ms=0, max_records=None):
        topic = self.subscriptions[-1][0]
        start = self.positions.get(topic, self.cluster.committed.get((self.group_id, topic), 0))
        log = self.cluster.logs.get(topic, [])
        end = len(log) if max_records is None else min(len(log), start + max_records)
        if start >= end:
            await asyncio.sleep(timeout_ms / 1000)
            return {}
        self.positions[topic] = end
        records = [
            SimpleNamespace(topic=topic, partition=0, offset=offset, value=log[offset], timestamp=1700000000000 + offset)
            for offset in range(start, end)
        ]
        return {TopicPartition(topic, 0): records}

    async def commit(self):
        for topic, position in self.positions.items():
            self.cluster.committed[(self.group_id, topic)] = position


class FakeAdmin:
    cluster: FakeCluster

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.closed = False
        self.cluster.admins.append(self)

    async def start(self):
        if self.cluster.fail_admin_start:
            raise KafkaConnectionError("admin bootstrap failed")

    async def close(self):
        self.closed = True

    async def create_topics(self, new_topics):
        await asyncio.sleep(0)
        for new_topic in new_topics:
            if new_topic.name in self.cluster.existing_topics:
                raise TopicAlreadyExistsError()
            self.cluster.existing_topics.add(new_topic.name)
            self.cluster.created_topics.append(new_topic)


@pytest.fixture
def cluster(monkeypatch):
    fake = FakeCluster()
    monkeypatch.setattr(kafka, "AIOKafkaProducer", lambda **kw: FakeProducer(fake, **kw))
    monkeypatch.setattr(kafka, "AIOKafkaConsumer", lambda **kw: FakeConsumer(fake, **kw))
    monkeypatch.setattr(kafka, "AIOKafkaAdminClient", type("BoundAdmin", (FakeAdmin,), {"cluster": fake}))
    return fake


@pytest.fixture
def make_broker(make_config):
    def _make(group_id="gateway"):
        return KafkaBroker(make_config(kafka={"brokers": ["localhost:9092"], "group_id": group_id, "consume_timeout": 0.05}))
    return _make


@pytest.mark.asyncio
async def test_publish_then_consume_commits_offsets(cluster, make_broker):
    broker = make_broker()
    await broker.connect()
    await broker.publish("events", {"type": "created"})
    await broker.publish("events", {"type": "updated"})

    batch = await broker.consume("events")
    assert [d.payload["type"] for d in batch] == ["created", "updated"]
    assert batch[1].ack.token == "0:1"
    assert batch[1].message_id == "events:0:1"
    assert cluster.committed[("gateway", "events")] == 2

    assert await broker.consume("events") == []


@pytest.mark.asyncio
async def test_consumer_configuration(cluster, make_broker):
    await make_broker().connect()
    [consumer] = cluster.consumers
    assert consumer.kwargs["bootstrap_servers"] == ["localhost:9092"]
    assert consumer.kwargs["auto_offset_reset"] == "earliest"
    assert consumer.kwargs["enable_auto_commit"] is False


@pytest.mark.asyncio
async def test_remove_is_noop_and_record_remains(cluster, make_broker, caplog):
    producer_side = make_broker()
    await producer_side.connect()
    await producer_side.publish("events", {"id": 1})

    with caplog.at_level(logging.WARNING):
        assert await producer_side.remove("events", {"id": 1}) is False
    assert "append-only" in caplog.text
    assert cluster.logs["events"] == [b'{"id":1}']

    reader = make_broker(group_id="audit")
    await reader.connect()
    assert [d.payload for d in await reader.consume("events")] == [{"id": 1}]


@pytest.mark.asyncio
async def test_empty_consume_returns_within_window(cluster, make_broker):
    broker = make_broker()
    await broker.connect()
    loop = asyncio.get_running_loop()
    started = loop.time()
    assert await broker.consume("events", timeout=0.1) == []
    assert loop.time() - started < 1.0


@pytest.mark.asyncio
async def test_switching_topics_resubscribes(cluster, make_broker):
    broker = make_broker()
    await broker.connect()
    await broker.publish("a", {"n": 1})
    await broker.publish("b", {"n": 2})
    assert [d.payload for d in await broker.consume("a")] == [{"n": 1}]
    assert [d.payload for d in await broker.consume("a")] == []
    assert [d.payload for d in await broker.consume("b")] == [{"n": 2}]
    assert cluster.consumers[0].subscriptions == [["a"], ["b"]]


@pytest.mark.asyncio
async def test_max_messages_limits_batch(cluster, make_broker):
    broker = make_broker()
    await broker.connect()
    for i in range(5):
        await broker.publish("events", {"n": i})
    first = await broker.consume("events", max_messages=2)
    rest = await broker.consume("events")
    assert [d.payload["n"] for d in first] == [0, 1]
    assert [d.payload["n"] for d in rest] == [2, 3, 4]


@pytest.mark.asyncio
async def test_connect_is_idempotent(cluster, make_broker):
    broker = make_broker()
    await broker.connect()
    await broker.connect()
    assert len(cluster.producers) == 1
    assert len(cluster.consumers) == 1


@pytest.mark.asyncio
async def test_failed_start_stops_started_clients(cluster, make_broker):
    cluster.fail_consumer_start = True
    broker = make_broker()
    with pytest.raises(BrokerConnectionError) as info:
        await broker.connect()
    assert isinstance(info.value.original_error, KafkaConnectionError)
    assert cluster.producers[0].stopped
    assert not broker.is_connected


@pytest.mark.asyncio
async def test_missing_group_id_raises(cluster, make_config):
    broker = KafkaBroker(make_config(kafka={"brokers": ["localhost:9092"]}))
    with pytest.raises(BrokerConnectionError, match="kafka.group_id"):
        await broker.connect()
    assert cluster.producers == []


@pytest.mark.asyncio
async def test_comma_separated_brokers_are_split(cluster, make_config):
    broker = KafkaBroker(make_config(kafka={"brokers": "k1:9092, k2:9092", "group_id": "g"}))
    await broker.connect()
    assert cluster.producers[0].kwargs["bootstrap_servers"] == ["k1:9092", "k2:9092"]


@pytest.mark.asyncio
async def test_operations_before_connect_raise(cluster, make_broker):
    broker = make_broker()
    with pytest.raises(PublishError):
        await broker.publish("events", {"id": 1})
    with pytest.raises(ConsumeError):
        await broker.consume("events")


@pytest.mark.asyncio
async def test_disconnect_stops_clients(cluster, make_broker):
    broker = make_broker()
    await broker.disconnect()
    await broker.connect()
    await broker.disconnect()
    assert cluster.producers[0].stopped
    assert cluster.consumers[0].stopped
    assert not broker.is_connected


def topics_created_metric():
    return REGISTRY.get_sample_value("topic_resource_created_total", {"broker": "kafka", "kind": "topic"}) or 0.0


@pytest.fixture
def make_admin_broker(make_config):
    def _make():
        return KafkaBroker(make_config(kafka={
            "brokers": ["localhost:9092"],
            "group_id": "gateway",
            "consume_timeout": 0.05,
            "create_topics": True,
            "num_partitions": 3,
            "replication_factor": 2,
        }))
    return _make


@pytest.mark.asyncio
async def test_concurrent_first_publishes_create_topic_once(cluster, make_admin_broker):
    broker = make_admin_broker()
    await broker.connect()
    await asyncio.gather(*(broker.publish("events", {"n": i}) for i in range(8)))
    await broker.publish("events", {"n": 8})

    [created] = cluster.created_topics
    assert (created.name, created.num_partitions, created.replication_factor) == ("events", 3, 2)
    assert len(cluster.logs["events"]) == 9


@pytest.mark.asyncio
async def test_existing_topic_is_tolerated(cluster, make_admin_broker):
    cluster.existing_topics.add("events")
    broker = make_admin_broker()
    await broker.connect()
    await broker.publish("events", {"n": 1})
    assert cluster.created_topics == []
    assert cluster.logs["events"] == [b'{"n":1}']


@pytest.mark.asyncio
async def test_disconnect_closes_admin_client(cluster, make_admin_broker):
    broker = make_admin_broker()
    await broker.connect()
    await broker.disconnect()
    [admin] = cluster.admins
    assert admin.closed
    assert broker.admin is None


@pytest.mark.asyncio
async def test_failed_admin_start_stops_producer_and_consumer(cluster, make_admin_broker):
    cluster.fail_admin_start = True
    broker = make_admin_broker()
    with pytest.raises(BrokerConnectionError):
        await broker.connect()
    assert cluster.producers[0].stopped
    assert cluster.consumers[0].stopped
    assert not cluster.admins[0].closed
    assert not broker.is_connected


@pytest.mark.asyncio
async def test_publish_without_topic_creation_counts_no_resource(cluster, make_broker):
    before = topics_created_metric()
    broker = make_broker()
    await broker.connect()
    await broker.publish("events", {"n": 1})
    assert cluster.admins == []
    assert len(broker._topics) == 0
    assert topics_created_metric() == before
