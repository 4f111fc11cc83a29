"""Uniform message-queue gateway over RabbitMQ, SQS, Kafka and Redis job queues.

Subpackages and modules include configuration, the broker contract, the
per-broker adapters, the broker selector, the gateway facade, metrics and
tracing helpers.
"""

from broker_gateway.errors import (
    BrokerConnectionError,
    BrokerError,
    ConfigurationError,
    ConsumeError,
    PublishError,
    RemoveError,
)
from broker_gateway.factory import available_brokers, create_broker, create_gateway, create_gateway_from_env
from broker_gateway.gateway import MessageGateway
from broker_gateway.models import AckRecord, BrokerCapabilities, Delivery

__all__ = [
    "AckRecord",
    "BrokerCapabilities",
    "BrokerConnectionError",
    "BrokerError",
    "ConfigurationError",
    "ConsumeError",
    "Delivery",
    "MessageGateway",
    "PublishError",
    "RemoveError",
    "available_brokers",
    "create_broker",
    "create_gateway",
    "create_gateway_from_env",
]
