"""
Consume-once script.

- Consumes one bounded batch from ``TOPIC`` and prints each payload as JSON
- With ``--remove``, removes every consumed message afterwards; on backends
  without targeted delete this logs a capability warning instead

Examples:
    MESSAGE_BROKER=sqs TOPIC=orders python -m scripts.consumer --remove
    MESSAGE_BROKER=kafka TOPIC=orders python -m scripts.consumer --timeout 10
"""

import argparse
import asyncio
import json
import os

from broker_gateway.config import Settings
from broker_gateway.factory import create_gateway
from broker_gateway.log import configure_logging
from broker_gateway.metrics import start_metrics_server
from broker_gateway.tracing import extract_context_from_headers, get_tracer, start_tracing
from opentelemetry import context  # type: ignore


async def main(broker_type: str, topic: str, timeout: float, remove: bool, metrics_port: int | None) -> None:
    """Consume one batch from ``topic``, print it, and optionally remove it."""
    if metrics_port:
        try:
            start_metrics_server(metrics_port)
            print(f"Metrics server listening on :{metrics_port} /metrics")
        except OSError:
            # Already started in this process; ignore
            pass
    start_tracing("broker-gateway-consumer")
    tracer = get_tracer("broker-gateway-consumer")

    gateway = create_gateway(broker_type)
    async with gateway:
        batch = await gateway.consume(topic, timeout=timeout)
        if not batch:
            print(json.dumps({"empty": True, "broker": broker_type, "topic": topic}))
        for delivery in batch:
            # Continue the producer's trace when the backend carried headers (AMQP)
            token = context.attach(extract_context_from_headers(delivery.attributes.get("headers")))
            try:
                with tracer.start_as_current_span("handle") as span:
                    span.set_attribute("topic", topic)
                    print(json.dumps({"message_id": delivery.message_id, "payload": delivery.payload}, default=str))
            finally:
                context.detach(token)
        if remove:
            if not gateway.capabilities.supports_targeted_delete:
                print(f"{broker_type} cannot delete specific messages; remove will only log a warning")
            for delivery in batch:
                await gateway.remove(topic, delivery)


if __name__ == "__main__":
    settings = Settings()
    parser = argparse.ArgumentParser(description="Consume one batch through the broker gateway")
    parser.add_argument("--broker", default=settings.message_broker, help="Broker type (rabbitmq, sqs, kafka, redis)")
    parser.add_argument("--topic", default=os.getenv("TOPIC", "orders"), help="Topic/queue name")
    parser.add_argument("--timeout", type=float, default=float(os.getenv("CONSUME_TIMEOUT", "5")), help="Consume window in seconds")
    parser.add_argument("--remove", action="store_true", help="Remove consumed messages")
    parser.add_argument("--metrics", action="store_true", help="Expose Prometheus metrics on METRICS_PORT")
    args = parser.parse_args()

    configure_logging(settings)
    asyncio.run(main(args.broker, args.topic, args.timeout, args.remove, settings.metrics_port if args.metrics else None))
