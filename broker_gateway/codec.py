"""JSON wire encoding shared by the adapters.

Envelopes are opaque to the gateway; each adapter only needs them as compact
UTF-8 JSON (bytes for AMQP and Kafka, ``str`` for SQS).
"""

from __future__ import annotations

import json
from typing import Any

from broker_gateway.errors import PublishError


def encode_text(message: Any, broker: str | None = None) -> str:
    """Serialize an envelope to compact JSON text, raising ``PublishError`` on failure."""
    try:
        return json.dumps(message, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise PublishError(f"message is not JSON serializable: {exc}", broker=broker, original_error=exc) from exc


def encode_bytes(message: Any, broker: str | None = None) -> bytes:
    return encode_text(message, broker).encode("utf-8")


def decode(body: bytes | str | None) -> Any:
    """Decode a JSON body. Empty bodies decode to an empty dict.

    Raises ``ValueError`` (``json.JSONDecodeError`` or ``UnicodeDecodeError``)
    for malformed input so callers can decide whether to reject or pass through.
    """
    if body is None or body == b"" or body == "":
        return {}
    if isinstance(body, (bytes, bytearray)):
        body = bytes(body).decode("utf-8")
    return json.loads(body)
