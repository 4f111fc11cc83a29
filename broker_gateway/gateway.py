"""Uniform facade application code depends on.

``MessageGateway`` holds one active adapter and delegates every operation to
it 1:1. The only things it adds are ambient: Prometheus counters, a tracing
span per operation, and wrapping of unexpected exceptions into the error
taxonomy so callers never see SDK-specific exception types.

Example:
    >>> gateway = create_gateway("rabbitmq")
    >>> async with gateway:
    ...     await gateway.publish("orders", {"id": 1})
    ...     batch = await gateway.consume("orders", timeout=2)
"""

from __future__ import annotations

import time
from typing import Any, List, NoReturn, Optional, Type

from broker_gateway.base import MessageBroker
from broker_gateway.errors import BrokerConnectionError, BrokerError, ConsumeError, PublishError, RemoveError
from broker_gateway.metrics import (
    BROKER_CONNECT_TOTAL,
    BROKER_DISCONNECT_TOTAL,
    CONSUME_BATCH_SIZE,
    CONSUME_FAILED_TOTAL,
    PUBLISH_ATTEMPT_TOTAL,
    PUBLISH_FAILED_TOTAL,
    PUBLISH_LATENCY_SECONDS,
    REMOVE_TOTAL,
)
from broker_gateway.models import BrokerCapabilities, Delivery
from broker_gateway.tracing import get_tracer, operation_span


def _raise_as(exc: Exception, error_cls: Type[BrokerError], broker: str, action: str) -> NoReturn:
    """Re-raise taxonomy errors unchanged; wrap anything else in ``error_cls``."""
    if isinstance(exc, BrokerError):
        raise exc
    raise error_cls(f"{broker} {action} failed: {exc}", broker=broker, original_error=exc) from exc


class MessageGateway:
    """Facade over one ``MessageBroker`` adapter.

    Properties:
    - `broker`: the wrapped adapter (exposed for introspection and tests)
    - `broker_type`: the adapter's token, e.g. ``"kafka"``
    - `capabilities`: what the active backend supports, so callers can check
      ``supports_targeted_delete`` instead of discovering a no-op at runtime
    """

    def __init__(self, broker: MessageBroker):
        self.broker = broker
        self._tracer = get_tracer()

    @property
    def broker_type(self) -> str:
        return self.broker.name

    @property
    def capabilities(self) -> BrokerCapabilities:
        return self.broker.capabilities

    @property
    def is_connected(self) -> bool:
        return self.broker.is_connected

    async def connect(self) -> None:
        with operation_span(self._tracer, "connect", self.broker_type):
            try:
                await self.broker.connect()
            except Exception as exc:
                BROKER_CONNECT_TOTAL.labels(broker=self.broker_type, result="error").inc()
                _raise_as(exc, BrokerConnectionError, self.broker_type, "connect")
            BROKER_CONNECT_TOTAL.labels(broker=self.broker_type, result="ok").inc()

    async def disconnect(self) -> None:
        with operation_span(self._tracer, "disconnect", self.broker_type):
            try:
                await self.broker.disconnect()
            except Exception as exc:
                BROKER_DISCONNECT_TOTAL.labels(broker=self.broker_type, result="error").inc()
                _raise_as(exc, BrokerConnectionError, self.broker_type, "disconnect")
            BROKER_DISCONNECT_TOTAL.labels(broker=self.broker_type, result="ok").inc()

    async def publish(self, topic: str, message: Any) -> None:
        with operation_span(self._tracer, "publish", self.broker_type, topic):
            start_ts = time.perf_counter()
            try:
                await self.broker.publish(topic, message)
            except Exception as exc:
                PUBLISH_ATTEMPT_TOTAL.labels(broker=self.broker_type, result="error").inc()
                PUBLISH_FAILED_TOTAL.labels(broker=self.broker_type, reason=exc.__class__.__name__).inc()
                _raise_as(exc, PublishError, self.broker_type, "publish")
            PUBLISH_ATTEMPT_TOTAL.labels(broker=self.broker_type, result="ok").inc()
            PUBLISH_LATENCY_SECONDS.labels(broker=self.broker_type).observe(time.perf_counter() - start_ts)

    async def consume(
        self,
        topic: str,
        timeout: Optional[float] = None,
        max_messages: Optional[int] = None,
    ) -> List[Delivery]:
        with operation_span(self._tracer, "consume", self.broker_type, topic) as span:
            try:
                batch = await self.broker.consume(topic, timeout=timeout, max_messages=max_messages)
            except Exception as exc:
                CONSUME_FAILED_TOTAL.labels(broker=self.broker_type, reason=exc.__class__.__name__).inc()
                _raise_as(exc, ConsumeError, self.broker_type, "consume")
            CONSUME_BATCH_SIZE.labels(broker=self.broker_type).observe(len(batch))
            span.set_attribute("messaging.batch.message_count", len(batch))
            return batch

    async def remove(self, topic: str, message: Any) -> bool:
        """Delete one message; ``False`` when unsupported or nothing matched."""
        with operation_span(self._tracer, "remove", self.broker_type, topic) as span:
            span.set_attribute("targeted_delete", self.capabilities.supports_targeted_delete)
            try:
                removed = await self.broker.remove(topic, message)
            except Exception as exc:
                REMOVE_TOTAL.labels(broker=self.broker_type, result="error").inc()
                _raise_as(exc, RemoveError, self.broker_type, "remove")
            if not self.capabilities.supports_targeted_delete:
                result = "unsupported"
            else:
                result = "ok" if removed else "not_found"
            REMOVE_TOTAL.labels(broker=self.broker_type, result=result).inc()
            span.set_attribute("removed", bool(removed))
            return bool(removed)

    async def __aenter__(self) -> "MessageGateway":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    def __repr__(self) -> str:
        return f"<MessageGateway broker={self.broker_type!r}>"
