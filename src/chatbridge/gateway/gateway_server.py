"""
gateway/gateway_server.py — Relay WebSocket Gateway

Owns the WebSocket endpoint the game server connects to. Uses the
`websockets` library.

  - The handshake must carry ``?access_token=<secret>``; anything else is
    refused with HTTP 401 before a single frame is read.
  - Exactly one game peer is served at a time. While a session is open,
    further handshakes are refused with HTTP 409.
  - Text frames carry ``{"message": ...}``; the text is handed to the
    ``on_message`` callback. Malformed and binary frames are dropped, the
    connection stays open.

Usage:
    gateway = RelayGateway(port=5555, token="secret", on_message=engine.handle_game_message)
    await gateway.start()
    await gateway.send(make_envelope("Alice", "hi"))
    await gateway.shutdown()
"""

from __future__ import annotations

import errno
import hmac
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from typing import Awaitable, Callable, Optional
from urllib.parse import parse_qs, urlsplit

import websockets
from websockets.asyncio.server import Server, ServerConnection
from websockets.http11 import Request, Response

from chatbridge.exceptions import AuthError, PortInUseError, ProtocolError, TransportError
from chatbridge.gateway.protocol import Envelope, parse_game_frame
from chatbridge.observability.logger import bind_peer, clear_peer, get_logger

log = get_logger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]

# Close codes that end a session without anything worth a warning
_NORMAL_CLOSURE = 1000
_ABNORMAL_CLOSURE = 1006
_TRY_AGAIN_LATER = 1013


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class RelaySession:
    """The one permitted game peer."""
    websocket: ServerConnection
    remote: str
    state: SessionState = SessionState.CONNECTING
    frames_received: int = field(default=0)

    @property
    def authenticated(self) -> bool:
        return self.state in (SessionState.AUTHENTICATED, SessionState.OPEN)

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN


def extract_token(path: str) -> Optional[str]:
    """Return the ``access_token`` query parameter of a request path."""
    values = parse_qs(urlsplit(path).query).get("access_token")
    return values[0] if values else None


class RelayGateway:
    """
    WebSocket server for the game-side relay peer.

    Accepts one authenticated connection and forwards every decoded text
    frame to ``on_message``. ``send`` writes envelopes to that peer.
    """

    def __init__(
        self,
        on_message: MessageHandler,
        *,
        token: str,
        host: str = "0.0.0.0",
        port: int = 5555,
    ):
        self._on_message = on_message
        self._token = token
        self._host = host
        self._port = port
        self._server: Optional[Server] = None
        self._session: Optional[RelaySession] = None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """
        Start listening. A gateway that is already running is shut down first.

        Raises:
            PortInUseError: the port is bound by another process.
            TransportError: any other bind failure.
        """
        if self._server is not None:
            log.info("gateway.restarting", port=self.port)
            await self.shutdown()

        try:
            self._server = await websockets.serve(
                self._handler,
                self._host,
                self._port,
                process_request=self._process_request,
                max_size=2**20,  # 1 MB max frame
            )
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                log.error("gateway.port_in_use", port=self._port)
                raise PortInUseError(self._port) from e
            log.error("gateway.start_failed", port=self._port, error=str(e))
            raise TransportError(f"Could not start gateway on port {self._port}: {e}") from e

        log.info("gateway.started", host=self._host, port=self.port)

    async def shutdown(self) -> None:
        """
        Abort the peer connection, then close the listening socket.
        Safe to call repeatedly and when the gateway never started.
        """
        session = self._session
        if session is not None and session.state is not SessionState.CLOSED:
            transport = session.websocket.transport
            if transport is not None:
                transport.abort()
            session.state = SessionState.CLOSED

        server = self._server
        if server is None:
            return
        self._server = None
        server.close()
        await server.wait_closed()
        log.info("gateway.stopped")

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """The bound port (differs from the configured one when that was 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return sock.getsockname()[1]
        return self._port

    @property
    def session(self) -> Optional[RelaySession]:
        return self._session

    @property
    def has_peer(self) -> bool:
        """True when an authenticated game peer is connected."""
        return self._session is not None and self._session.is_open

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────────

    async def send(self, envelope: Envelope) -> bool:
        """
        Write one envelope to the game peer.

        Returns False (without raising) when no peer is connected or the
        connection dropped mid-send.
        """
        session = self._session
        if session is None or not session.is_open:
            log.debug("gateway.send_skipped", reason="no peer", sender=envelope.sender)
            return False
        try:
            await session.websocket.send(envelope.to_json())
        except websockets.ConnectionClosed:
            log.warning("gateway.send_failed", reason="connection closed")
            return False
        log.debug("gateway.sent", sender=envelope.sender, message=envelope.message)
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Handshake
    # ─────────────────────────────────────────────────────────────────────────

    def _check_token(self, request: Request) -> None:
        token = extract_token(request.path)
        if token is None or not hmac.compare_digest(
            token.encode("utf-8"), self._token.encode("utf-8")
        ):
            raise AuthError("Invalid access token.")

    def _process_request(
        self, connection: ServerConnection, request: Request
    ) -> Optional[Response]:
        remote = _format_remote(connection)
        try:
            self._check_token(request)
        except AuthError as e:
            log.warning("gateway.auth_rejected", remote=remote)
            return connection.respond(HTTPStatus.UNAUTHORIZED, f"{e}\n")

        if self.has_peer:
            log.warning("gateway.peer_rejected", remote=remote, reason="session already open")
            return connection.respond(
                HTTPStatus.CONFLICT, "Another game client is already connected.\n"
            )
        return None

    # ─────────────────────────────────────────────────────────────────────────
    # Connection handler
    # ─────────────────────────────────────────────────────────────────────────

    async def _handler(self, websocket: ServerConnection) -> None:
        """Serve one authenticated game peer until it disconnects."""
        remote = _format_remote(websocket)

        # Two handshakes can pass the 409 check before either handler runs
        if self.has_peer:
            log.warning("gateway.peer_rejected", remote=remote, reason="race")
            await websocket.close(code=_TRY_AGAIN_LATER, reason="relay busy")
            return

        session = RelaySession(websocket=websocket, remote=remote,
                               state=SessionState.AUTHENTICATED)
        self._session = session
        bind_peer(remote)
        log.info("gateway.client_connected", remote=remote)
        session.state = SessionState.OPEN

        try:
            async for raw in websocket:
                session.frames_received += 1
                await self._on_frame(raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            session.state = SessionState.CLOSED
            if self._session is session:
                self._session = None
            _log_close(websocket.close_code, websocket.close_reason)
            clear_peer()

    async def _on_frame(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            log.warning("gateway.binary_frame_dropped", size=len(raw))
            return

        try:
            message = parse_game_frame(raw)
        except ProtocolError as e:
            log.warning("gateway.protocol_error", error=str(e), frame=raw[:200])
            return

        log.debug("gateway.frame_received", message=message)
        try:
            await self._on_message(message)
        except Exception:
            log.exception("gateway.message_handler_failed", message=message)


def _format_remote(connection: ServerConnection) -> str:
    address = getattr(connection, "remote_address", None)
    if not address:
        return "?"
    return f"{address[0]}:{address[1]}"


def _log_close(code: Optional[int], reason: str) -> None:
    if code is None:
        code = _ABNORMAL_CLOSURE
    if code == _NORMAL_CLOSURE:
        log.info("gateway.client_disconnected", code=code)
    elif code == _ABNORMAL_CLOSURE:
        log.debug("gateway.client_disconnected", code=code)
    else:
        log.warning("gateway.client_closed_unexpectedly", code=code, reason=reason or "")
