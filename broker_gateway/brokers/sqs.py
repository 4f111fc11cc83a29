"""Cloud-Poll-Queue adapter over Amazon SQS, built on ``boto3``.

SQS has no persistent connection: ``connect`` only builds the client and
``disconnect`` drops it. Queue URLs come from ``sqs.queues.<topic>`` and fall
back to ``GetQueueUrl(QueueName=topic)``; either way the URL is resolved once
per topic and cached.

This is the one adapter where ``remove`` is fully meaningful. ``consume``
returns every message with the exact ``ReceiptHandle`` SQS issued for that
receive, and ``remove`` deletes by that handle only. Two messages with the
same payload have different handles, so deleting one never touches the other.
A raw SQS message mapping (as returned by ``ReceiveMessage``) is accepted too,
since its ``ReceiptHandle`` is the handle SQS issued. A handle is never rebuilt
from the payload; calling ``remove`` without one raises ``RemoveError``.

boto3 is synchronous, so every call runs in a worker thread
(``asyncio.to_thread``) and calls for distinct topics proceed concurrently.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from broker_gateway.base import MessageBroker
from broker_gateway.codec import decode, encode_text
from broker_gateway.errors import BrokerConnectionError, BrokerError, ConsumeError, PublishError, RemoveError
from broker_gateway.models import BrokerCapabilities, Delivery
from broker_gateway.resources import TopicResources


MAX_RECEIVE_BATCH = 10  # SQS hard limit for MaxNumberOfMessages
MAX_WAIT_SECONDS = 20  # SQS hard limit for WaitTimeSeconds


class SQSBroker(MessageBroker):
    """Amazon SQS queues behind the uniform broker contract."""

    name = "sqs"
    capabilities = BrokerCapabilities(
        supports_targeted_delete=True,
        remove_cost="O(1)",
        consume_model="poll",
        requires_connection=False,
    )

    def __init__(self, config, logger=None) -> None:
        super().__init__(config, logger)
        self.client: Any = None
        self._queue_urls: TopicResources[str] = TopicResources(self.name, "queue_url")

    async def connect(self) -> None:
        if self._connected:
            return
        self.logger.info("Connecting to SQS.", extra={"broker": self.name})
        region = self._require("sqs.region")
        kwargs: Dict[str, Any] = {"region_name": region}
        access_key = self._option("sqs.access_key_id", None)
        secret_key = self._option("sqs.secret_access_key", None)
        if access_key and secret_key:
            kwargs["aws_access_key_id"] = access_key
            kwargs["aws_secret_access_key"] = secret_key
        endpoint_url = self._option("sqs.endpoint_url", None)
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        try:
            self.client = boto3.client("sqs", **kwargs)
        except (BotoCoreError, ValueError) as exc:
            raise BrokerConnectionError(f"could not create SQS client: {exc}", broker=self.name, original_error=exc) from exc
        self._connected = True
        self.logger.info("SQS client ready for region %s.", region, extra={"broker": self.name})

    async def disconnect(self) -> None:
        self.logger.info("Disconnecting from SQS.", extra={"broker": self.name})
        self.client = None
        self._connected = False
        self._queue_urls.clear()

    # -------------------------
    # Queue URL resolution
    # -------------------------

    async def _resolve_url(self, topic: str) -> str:
        configured = self.config.get(f"sqs.queues.{topic}")
        if configured:
            return str(configured)
        response = await asyncio.to_thread(self.client.get_queue_url, QueueName=topic)
        self.logger.info("Resolved SQS queue URL for %s.", topic, extra={"broker": self.name, "topic": topic})
        return response["QueueUrl"]

    async def _queue_url(self, topic: str) -> str:
        return await self._queue_urls.get_or_create(topic, self._resolve_url)

    # -------------------------
    # Messaging
    # -------------------------

    async def publish(self, topic: str, message: Any) -> None:
        self._ensure_connected(PublishError)
        body = encode_text(message, broker=self.name)
        self.logger.info("Publishing message to SQS queue: %s", topic, extra={"broker": self.name, "topic": topic})
        try:
            queue_url = await self._queue_url(topic)
            await asyncio.to_thread(self.client.send_message, QueueUrl=queue_url, MessageBody=body)
        except (BotoCoreError, ClientError) as exc:
            raise PublishError(f"SQS rejected publish to {topic}: {exc}", broker=self.name, original_error=exc) from exc
        self.logger.info("Message published to SQS queue: %s", topic, extra={"broker": self.name, "topic": topic})

    def _receive_params(self, queue_url: str, timeout: Optional[float], max_messages: Optional[int]) -> Dict[str, Any]:
        configured_wait = int(self._option("sqs.wait_time_seconds", MAX_WAIT_SECONDS))
        wait = configured_wait if timeout is None else min(int(timeout), configured_wait)
        count = max_messages or int(self._option("sqs.max_messages", MAX_RECEIVE_BATCH))
        params: Dict[str, Any] = {
            "QueueUrl": queue_url,
            "MaxNumberOfMessages": min(max(count, 1), MAX_RECEIVE_BATCH),
            "WaitTimeSeconds": min(max(wait, 0), MAX_WAIT_SECONDS),
            "AttributeNames": ["All"],
            "MessageAttributeNames": ["All"],
        }
        visibility = int(self._option("sqs.visibility_timeout", 0))
        if visibility > 0:
            params["VisibilityTimeout"] = visibility
        return params

    async def consume(
        self,
        topic: str,
        timeout: Optional[float] = None,
        max_messages: Optional[int] = None,
    ) -> List[Delivery]:
        self._ensure_connected(ConsumeError)
        self.logger.info("Consuming messages from SQS queue: %s", topic, extra={"broker": self.name, "topic": topic})
        try:
            queue_url = await self._queue_url(topic)
            result = await asyncio.to_thread(
                self.client.receive_message, **self._receive_params(queue_url, timeout, max_messages)
            )
        except (BotoCoreError, ClientError) as exc:
            raise ConsumeError(f"SQS receive from {topic} failed: {exc}", broker=self.name, original_error=exc) from exc

        batch: List[Delivery] = []
        for raw in result.get("Messages", []):
            body = raw.get("Body")
            try:
                payload = decode(body)
            except ValueError:
                payload = body
            batch.append(
                Delivery(
                    topic=topic,
                    payload=payload,
                    ack=self._ack_record(topic, raw["ReceiptHandle"]),
                    message_id=raw.get("MessageId"),
                    attributes={
                        "attributes": raw.get("Attributes", {}),
                        "message_attributes": raw.get("MessageAttributes", {}),
                    },
                )
            )
        self.logger.info(
            "Consumed %d messages from SQS queue: %s", len(batch), topic,
            extra={"broker": self.name, "topic": topic},
        )
        return batch

    async def remove(self, topic: str, message: Any) -> bool:
        self._ensure_connected(RemoveError)
        ack = self._ack_of(message)
        if ack is None and isinstance(message, Mapping) and message.get("ReceiptHandle"):
            ack = self._ack_record(topic, message["ReceiptHandle"])
        if ack is None:
            raise RemoveError(
                "SQS removal needs the receipt handle returned by consume(); pass the Delivery or its AckRecord",
                broker=self.name,
            )
        if ack.broker != self.name or ack.topic != topic:
            raise RemoveError(
                f"acknowledgment for {ack.broker}:{ack.topic} cannot remove a message from sqs:{topic}",
                broker=self.name,
            )
        self.logger.info("Removing message from SQS queue: %s", topic, extra={"broker": self.name, "topic": topic})
        try:
            queue_url = await self._queue_url(topic)
            await asyncio.to_thread(self.client.delete_message, QueueUrl=queue_url, ReceiptHandle=ack.token)
        except BrokerError:
            raise
        except (BotoCoreError, ClientError) as exc:
            raise RemoveError(f"SQS rejected delete on {topic}: {exc}", broker=self.name, original_error=exc) from exc
        self.logger.info("Message removed from SQS queue: %s", topic, extra={"broker": self.name, "topic": topic})
        return True
