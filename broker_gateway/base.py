"""The ``MessageBroker`` contract every adapter implements.

Why this exists:
- Application code talks to one interface regardless of whether messages go
  through RabbitMQ, SQS, Kafka or a Redis job queue
- Backend differences that cannot be hidden (targeted delete, consume model)
  are published through ``capabilities`` instead of being discovered at runtime

Contract summary:
- ``connect`` / ``disconnect`` are idempotent and safe in any state
- ``publish`` lazily creates the topic's broker resource, exactly once
- ``consume`` returns a bounded, possibly empty batch of ``Delivery`` objects
  and never blocks past its window
- ``remove`` deletes a specific message where the backend can and returns
  whether it did; otherwise it is a successful no-op that logs a capability
  warning and returns ``False``
"""

from __future__ import annotations

import abc
import logging
from typing import Any, ClassVar, List, Optional, Type

from broker_gateway.config import ConfigProvider
from broker_gateway.errors import BrokerConnectionError, BrokerError
from broker_gateway.metrics import CAPABILITY_WARNING_TOTAL
from broker_gateway.models import AckRecord, BrokerCapabilities, Delivery


_MISSING = object()


class MessageBroker(abc.ABC):
    """Abstract adapter over one broker technology.

    Subclasses set ``name`` and ``capabilities`` and implement the five
    operations. Configuration is read lazily (at ``connect``), so constructing
    an adapter never touches the network or the config provider.
    """

    name: ClassVar[str] = "abstract"
    capabilities: ClassVar[BrokerCapabilities]

    def __init__(self, config: ConfigProvider, logger: Optional[logging.Logger] = None) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(f"{__name__}.{self.name}")
        self._connected = False
        self.logger.info("%s broker initialized", self.name, extra={"broker": self.name})

    @property
    def is_connected(self) -> bool:
        return self._connected

    # -------------------------
    # Contract
    # -------------------------

    @abc.abstractmethod
    async def connect(self) -> None:
        """Establish transport connections. No-op when already connected."""

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """Release all transport resources. Safe when never connected."""

    @abc.abstractmethod
    async def publish(self, topic: str, message: Any) -> None:
        """Deliver ``message`` to ``topic``, creating the topic resource if needed."""

    @abc.abstractmethod
    async def consume(
        self,
        topic: str,
        timeout: Optional[float] = None,
        max_messages: Optional[int] = None,
    ) -> List[Delivery]:
        """Return the messages available on ``topic`` within a bounded window."""

    @abc.abstractmethod
    async def remove(self, topic: str, message: Any) -> bool:
        """Delete one message; return whether anything was deleted.

        Backends without targeted delete log a capability warning and return
        ``False``.
        """

    # -------------------------
    # Shared helpers
    # -------------------------

    def _require(self, key: str) -> Any:
        """Return a required config value or raise ``BrokerConnectionError``."""
        value = self.config.get(key, _MISSING)
        if value is _MISSING or value is None or value == "" or value == []:
            raise BrokerConnectionError(f"missing required configuration key: {key}", broker=self.name)
        return value

    def _option(self, key: str, default: Any) -> Any:
        value = self.config.get(key, None)
        return default if value is None or value == "" else value

    def _ensure_connected(self, error_cls: Type[BrokerError]) -> None:
        if not self._connected:
            raise error_cls(f"{self.name} broker is not connected; call connect() first", broker=self.name)

    def _warn_unsupported(self, operation: str, topic: str, reason: str) -> None:
        """Log and count an operation the backend cannot perform."""
        CAPABILITY_WARNING_TOTAL.labels(broker=self.name, operation=operation).inc()
        self.logger.warning(
            "%s: %s on topic %s is not supported and was ignored: %s",
            self.name,
            operation,
            topic,
            reason,
            extra={"broker": self.name, "topic": topic, "operation": operation},
        )

    def _ack_record(self, topic: str, token: Any) -> AckRecord:
        return AckRecord(broker=self.name, topic=topic, token=str(token))

    @staticmethod
    def _ack_of(message: Any) -> Optional[AckRecord]:
        """Return the acknowledgment record carried by ``message``, if any."""
        if isinstance(message, AckRecord):
            return message
        if isinstance(message, Delivery):
            return message.ack
        return None

    @staticmethod
    def _window(timeout: Optional[float], default: float) -> float:
        """Resolve the consume window in seconds; never negative."""
        window = default if timeout is None else timeout
        return max(float(window), 0.0)

    def __repr__(self) -> str:
        state = "connected" if self._connected else "disconnected"
        return f"<{type(self).__name__} {state}>"
