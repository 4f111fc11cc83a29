"""
Simple producer script.

- Builds the gateway for the broker named by ``MESSAGE_BROKER``
- Publishes one JSON message (``MESSAGE`` env, or a demo payload) to ``TOPIC``
- Records publish metrics and a trace span around the call

Examples:
    MESSAGE_BROKER=rabbitmq TOPIC=orders python -m scripts.producer
    MESSAGE_BROKER=sqs TOPIC=orders MESSAGE='{"id": 1}' python -m scripts.producer --count 5
"""

import argparse
import asyncio
import json
import os
import uuid
from typing import Any

from broker_gateway.factory import create_gateway
from broker_gateway.config import Settings
from broker_gateway.log import configure_logging
from broker_gateway.tracing import start_tracing


def build_message(raw: str | None) -> Any:
    """Return the message to publish: ``raw`` parsed as JSON, or a demo payload."""
    if raw:
        return json.loads(raw)
    return {"message_id": str(uuid.uuid4()), "type": "demo", "context": {"demo": True}}


async def main(broker_type: str, topic: str, raw_message: str | None, count: int) -> None:
    """Connect, publish ``count`` messages to ``topic`` and disconnect."""
    start_tracing("broker-gateway-producer")
    gateway = create_gateway(broker_type)
    async with gateway:
        for _ in range(count):
            message = build_message(raw_message)
            await gateway.publish(topic, message)
            print(json.dumps({"published": True, "broker": broker_type, "topic": topic, "message": message}))


if __name__ == "__main__":
    settings = Settings()
    parser = argparse.ArgumentParser(description="Publish messages through the broker gateway")
    parser.add_argument("--broker", default=settings.message_broker, help="Broker type (rabbitmq, sqs, kafka, redis)")
    parser.add_argument("--topic", default=os.getenv("TOPIC", "orders"), help="Topic/queue name")
    parser.add_argument("--count", type=int, default=int(os.getenv("COUNT", "1")), help="Number of messages to publish")
    args = parser.parse_args()

    configure_logging(settings)
    asyncio.run(main(args.broker, args.topic, os.getenv("MESSAGE"), args.count))
