"""Value types passed across the gateway boundary.

These models make the call sites more explicit than passing generic dicts
around: ``consume`` returns ``Delivery`` objects that keep the backend's
acknowledgment handle next to the decoded payload, so ``remove`` never has to
reconstruct a handle from the payload.
"""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


ConsumeModel = Literal["poll", "stream", "event"]


class BrokerCapabilities(BaseModel):
    """What an adapter can actually do behind the uniform interface.

    Example:
        >>> caps = BrokerCapabilities(supports_targeted_delete=False, remove_cost="n/a", consume_model="stream")
        >>> caps.supports_targeted_delete
        False
    """
    model_config = ConfigDict(frozen=True)

    supports_targeted_delete: bool
    remove_cost: str
    consume_model: ConsumeModel
    requires_connection: bool = True


class AckRecord(BaseModel):
    """Backend-issued token identifying one delivered message.

    ``token`` is the SQS receipt handle, the AMQP delivery tag, the Kafka
    ``partition:offset`` pair, or the arq job id.
    """
    model_config = ConfigDict(frozen=True)

    broker: str
    topic: str
    token: str


class Delivery(BaseModel):
    """A consumed message: the decoded envelope plus how it arrived."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    topic: str
    payload: Any = None
    ack: Optional[AckRecord] = None
    message_id: Optional[str] = None
    attributes: dict[str, Any] = Field(default_factory=dict)
