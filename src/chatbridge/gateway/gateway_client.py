"""
gateway/gateway_client.py — Game-side Relay Client

Thin async client that speaks the relay wire format from the game side.
Used by the ``chatbridge send`` smoke-test command and by the test-suite;
a real deployment runs a ChatBridge client plugin inside the game server
instead.

Usage:
    async with RelayClient("ws://localhost:5555", token="secret") as client:
        await client.send("[Survival] <Alice> hello")
        envelope = await client.receive(timeout=5)
"""

from __future__ import annotations

import asyncio
from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets
from websockets.asyncio.client import ClientConnection

from chatbridge.gateway.protocol import Envelope, make_game_frame
from chatbridge.observability.logger import get_logger

log = get_logger(__name__)


def with_token(url: str, token: Optional[str]) -> str:
    """Append ``access_token`` to a WebSocket URL's query string."""
    if not token:
        return url
    parts = urlsplit(url)
    query = "&".join(q for q in (parts.query, urlencode({"access_token": token})) if q)
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", query, parts.fragment))


class RelayClient:
    """
    Async WebSocket client for the relay gateway.

    Async context manager — auto-connects on enter, disconnects on exit.
    """

    def __init__(
        self,
        url: str = "ws://127.0.0.1:5555",
        token: Optional[str] = None,
    ):
        self._url = with_token(url, token)
        self._ws: Optional[ClientConnection] = None

    async def __aenter__(self) -> "RelayClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.disconnect()

    # ─────────────────────────────────────────────────────────────────────────
    # Connection lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Connect to the gateway. Raises websockets.InvalidStatus if refused."""
        self._ws = await websockets.connect(self._url, max_size=2**20)
        log.info("relay_client.connected", url=urlsplit(self._url).netloc)

    async def disconnect(self) -> None:
        if self._ws:
            await self._ws.close()
            self._ws = None
        log.info("relay_client.disconnected")

    # ─────────────────────────────────────────────────────────────────────────
    # Frames
    # ─────────────────────────────────────────────────────────────────────────

    async def send(self, message: str) -> None:
        """Send one game → bridge message frame."""
        await self._connection().send(make_game_frame(message))

    async def send_raw(self, frame: str | bytes) -> None:
        """Send an arbitrary frame, bypassing the wire format."""
        await self._connection().send(frame)

    async def receive(self, timeout: Optional[float] = None) -> Envelope:
        """Wait for the next bridge → game envelope."""
        raw = await asyncio.wait_for(self._connection().recv(), timeout=timeout)
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return Envelope.from_json(raw)

    def _connection(self) -> ClientConnection:
        if self._ws is None:
            raise RuntimeError("RelayClient is not connected; call connect() first.")
        return self._ws
