"""
exceptions.py — chatbridge Unified Error Hierarchy

All chatbridge-specific exceptions live here. Every layer of the relay
raises typed subclasses of ChatBridgeError — never bare Exception.

Import from here, not from individual modules:
    from chatbridge.exceptions import RateLimitError, PortInUseError

Hierarchy:
    ChatBridgeError
    ├── GatewayError
    │   ├── AuthError
    │   ├── ProtocolError
    │   └── TransportError
    │       └── PortInUseError
    ├── DeliveryError
    │   ├── SinkUnavailableError
    │   └── RateLimitError
    └── ResolverError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class ChatBridgeError(Exception):
    """Base class for all chatbridge exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Gateway layer
# ─────────────────────────────────────────────────────────────────────────────

class GatewayError(ChatBridgeError):
    """Base for WebSocket gateway errors."""


class AuthError(GatewayError):
    """A peer presented a missing or wrong access token. Never retried."""


class ProtocolError(GatewayError):
    """A frame could not be decoded. The frame is dropped, the peer stays."""


class TransportError(GatewayError):
    """The gateway could not bind or operate its listening socket."""


class PortInUseError(TransportError):
    """The configured port is already bound by another process."""

    def __init__(self, port: int, message: str = "") -> None:
        self.port = port
        super().__init__(
            message or f"Port {port} is already in use. Stop the other process "
                       f"or change gateway.port in the config."
        )


# ─────────────────────────────────────────────────────────────────────────────
# Delivery layer (raised by broadcast sink adapters)
# ─────────────────────────────────────────────────────────────────────────────

class DeliveryError(ChatBridgeError):
    """A broadcast failed for a reason that retrying will not fix."""


class SinkUnavailableError(DeliveryError):
    """The broadcast sink is not initialised or its bot is offline."""


class RateLimitError(DeliveryError):
    """The chat platform refused the broadcast because a push quota was hit."""

    def __init__(self, message: str = "", retry_after: Optional[float] = None) -> None:
        self.retry_after = retry_after
        super().__init__(message or "Broadcast rate limit reached.")


# ─────────────────────────────────────────────────────────────────────────────
# Short-link layer
# ─────────────────────────────────────────────────────────────────────────────

class ResolverError(ChatBridgeError):
    """The short-link service failed to shorten a URL."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to shorten '{url}': {reason}")


__all__ = [
    "ChatBridgeError",
    # Gateway
    "GatewayError",
    "AuthError",
    "ProtocolError",
    "TransportError",
    "PortInUseError",
    # Delivery
    "DeliveryError",
    "SinkUnavailableError",
    "RateLimitError",
    # Short-link
    "ResolverError",
]
