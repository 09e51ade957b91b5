"""
gateway/ — Relay WebSocket Gateway

The WebSocket endpoint the game server connects to, the JSON wire format
spoken over it, and a small game-side client for smoke tests.
"""

from chatbridge.gateway.protocol import Envelope, make_envelope, parse_game_frame
from chatbridge.gateway.gateway_server import RelayGateway, RelaySession, SessionState
from chatbridge.gateway.gateway_client import RelayClient

__all__ = [
    "Envelope",
    "make_envelope",
    "parse_game_frame",
    "RelayGateway",
    "RelaySession",
    "SessionState",
    "RelayClient",
]
