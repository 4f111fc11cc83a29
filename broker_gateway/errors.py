"""Error taxonomy shared by every broker adapter and the gateway.

Adapters wrap transport exceptions into one of these classes so callers of
the uniform interface only handle one hierarchy. Operations a backend cannot
perform (deleting a record from an append-only log) are not errors; they
succeed and log a capability warning instead.
"""

from __future__ import annotations

from typing import Optional


class BrokerError(Exception):
    """Base class for gateway errors.

    Attributes:
        broker: Token of the adapter that raised (``"rabbitmq"``, ``"sqs"`` ...).
        original_error: The transport exception that caused this error, if any.
    """

    def __init__(
        self,
        message: str,
        broker: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.broker = broker
        self.original_error = original_error


class BrokerConnectionError(BrokerError, ConnectionError):
    """Transport unreachable, bad credentials, or missing required configuration."""


class PublishError(BrokerError):
    """Serialization failure or the transport rejected the send."""


class ConsumeError(BrokerError):
    """Subscribe or poll failure."""


class RemoveError(BrokerError):
    """The transport rejected a delete, or no acknowledgment handle was given."""


class ConfigurationError(BrokerError, ValueError):
    """Invalid gateway configuration, e.g. an unknown broker type token."""
