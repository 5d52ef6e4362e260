"""
Delivery transports.
"""
from typing import TYPE_CHECKING
from herald.clients.base import BaseTransport
from herald.clients.log import LogTransport
from herald.clients.ntfy import NtfyTransport
from herald.clients.webhook import WebhookTransport

if TYPE_CHECKING:
    from herald.config import TransportConfig

__all__ = [
    "BaseTransport",
    "LogTransport",
    "NtfyTransport",
    "WebhookTransport",
    "create_transport",
    "TRANSPORT_TYPES",
]

# Map of transport type to class and required fields
TRANSPORT_TYPES = {
    "log": {
        "class": LogTransport,
        "name": "Log only",
        "fields": [],
    },
    "webhook": {
        "class": WebhookTransport,
        "name": "Webhook",
        "fields": ["url"],
    },
    "ntfy": {
        "class": NtfyTransport,
        "name": "ntfy",
        "fields": ["url", "topic_prefix"],
    },
}


def create_transport(config: "TransportConfig") -> BaseTransport:
    """
    Factory function to create a delivery transport based on configuration.

    Args:
        config: TransportConfig instance

    Returns:
        Appropriate transport instance

    Raises:
        ValueError: If transport type is unknown or a required field is missing
    """
    transport_type = config.type.lower()

    if transport_type not in TRANSPORT_TYPES:
        raise ValueError(f"Unknown transport type: {transport_type}")

    if transport_type == "webhook":
        if not config.url:
            raise ValueError("Webhook transport requires a url")
        return WebhookTransport(
            url=config.url,
            headers=config.headers,
            timeout_seconds=config.timeout_seconds
        )
    elif transport_type == "ntfy":
        return NtfyTransport(
            url=config.url,
            topic_prefix=config.topic_prefix,
            timeout_seconds=config.timeout_seconds
        )
    else:
        return LogTransport()
