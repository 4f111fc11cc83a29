"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server


# Lifecycle metrics
BROKER_CONNECT_TOTAL = Counter(
    "broker_connect_total", "Total connect attempts", ["broker", "result"]
)
BROKER_DISCONNECT_TOTAL = Counter(
    "broker_disconnect_total", "Total disconnect calls", ["broker", "result"]
)

# Publisher metrics
PUBLISH_ATTEMPT_TOTAL = Counter(
    "publish_attempt_total", "Total publish attempts", ["broker", "result"]
)
PUBLISH_FAILED_TOTAL = Counter(
    "publish_failed_total", "Total publish failures", ["broker", "reason"]
)
PUBLISH_LATENCY_SECONDS = Histogram(
    "publish_latency_seconds", "Time to publish a single message", ["broker"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 2, 5),
)

# Consumer metrics
CONSUME_BATCH_SIZE = Histogram(
    "consume_batch_size",
    "Number of messages returned by a single consume call",
    ["broker"],
    buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500),
)
CONSUME_FAILED_TOTAL = Counter(
    "consume_failed_total", "Total consume failures", ["broker", "reason"]
)

# Remove metrics
REMOVE_TOTAL = Counter(
    "remove_total", "Total remove calls", ["broker", "result"]
)
CAPABILITY_WARNING_TOTAL = Counter(
    "capability_warning_total",
    "Total operations answered as no-ops because the backend lacks the capability",
    ["broker", "operation"],
)

# Per-topic resource cache
TOPIC_RESOURCE_CREATED_TOTAL = Counter(
    "topic_resource_created_total",
    "Total per-topic broker resources created (queues, workers, URL lookups)",
    ["broker", "kind"],
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
