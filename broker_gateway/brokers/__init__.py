"""Broker adapters, one module per backend.

Available backends:
    - RabbitMQBroker: classic AMQP queues (aio-pika)
    - SQSBroker: Amazon SQS polling queues (boto3)
    - KafkaBroker: Kafka append-only logs (aiokafka)
    - RedisQueueBroker: Redis job queues (arq)
"""

from broker_gateway.brokers.kafka import KafkaBroker
from broker_gateway.brokers.rabbitmq import RabbitMQBroker
from broker_gateway.brokers.redis_queue import RedisQueueBroker
from broker_gateway.brokers.sqs import SQSBroker

__all__ = ["KafkaBroker", "RabbitMQBroker", "RedisQueueBroker", "SQSBroker"]
