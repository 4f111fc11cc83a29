"""Broker selector: the only place that branches on broker type.

``create_gateway("kafka")`` builds the matching adapter, injects the config
provider and a logger, and wraps it in a ``MessageGateway``. Application code
switches brokers by changing ``MESSAGE_BROKER``, never by changing code.

An unknown token raises ``ConfigurationError`` before the config provider is
read and before any network resource is touched.

Example:
    >>> gateway = create_gateway("sqs")
    >>> gateway.capabilities.supports_targeted_delete
    True
    >>> create_gateway("mqtt")
    Traceback (most recent call last):
    ...
    broker_gateway.errors.ConfigurationError: Unknown broker type: mqtt (expected one of: kafka, rabbitmq, redis, sqs)
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Type

from broker_gateway.base import MessageBroker
from broker_gateway.brokers import KafkaBroker, RabbitMQBroker, RedisQueueBroker, SQSBroker
from broker_gateway.config import ConfigProvider, Settings, get_config_service
from broker_gateway.errors import ConfigurationError
from broker_gateway.gateway import MessageGateway
from broker_gateway.log import get_broker_logger


BROKERS: Dict[str, Type[MessageBroker]] = {
    RabbitMQBroker.name: RabbitMQBroker,
    SQSBroker.name: SQSBroker,
    KafkaBroker.name: KafkaBroker,
    RedisQueueBroker.name: RedisQueueBroker,
}


def available_brokers() -> List[str]:
    return sorted(BROKERS)


def _resolve(broker_type: str) -> Type[MessageBroker]:
    token = (broker_type or "").strip().lower()
    broker_cls = BROKERS.get(token)
    if broker_cls is None:
        raise ConfigurationError(
            f"Unknown broker type: {broker_type} (expected one of: {', '.join(available_brokers())})"
        )
    return broker_cls


def create_broker(
    broker_type: str,
    config: Optional[ConfigProvider] = None,
    logger: Optional[logging.Logger] = None,
) -> MessageBroker:
    """Build the adapter for ``broker_type`` without connecting it."""
    broker_cls = _resolve(broker_type)
    if config is None:
        config = get_config_service()
    if logger is None:
        logger = get_broker_logger(broker_cls.name)
    return broker_cls(config, logger)


def create_gateway(
    broker_type: str,
    config: Optional[ConfigProvider] = None,
    logger: Optional[logging.Logger] = None,
) -> MessageGateway:
    """Build the adapter for ``broker_type`` and wrap it in a ``MessageGateway``."""
    return MessageGateway(create_broker(broker_type, config, logger))


def create_gateway_from_env(
    config: Optional[ConfigProvider] = None,
    logger: Optional[logging.Logger] = None,
) -> MessageGateway:
    """Build the gateway for the broker named by ``MESSAGE_BROKER`` (default ``rabbitmq``)."""
    return create_gateway(Settings().message_broker, config, logger)
