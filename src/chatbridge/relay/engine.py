"""
relay/engine.py — RelayEngine

Wires the gateway, delivery controller, scheduler and normalizer together.
Platform adapters feed it chat events and login/logout notifications; the
gateway feeds it game messages.

    game ──ws──► RelayGateway ──► DeliveryController ──► sink (chat platform)
    chat ──────► handle_chat_event ──► TextNormalizer ──► RelayGateway ──ws──► game

Usage:
    engine = RelayEngine(settings, sink=bridge)
    await engine.start()
    ...
    await engine.stop()
"""

from __future__ import annotations

from typing import Optional

from chatbridge.config.settings import Settings
from chatbridge.exceptions import ResolverError
from chatbridge.gateway.gateway_server import RelayGateway
from chatbridge.gateway.protocol import make_envelope
from chatbridge.observability.logger import get_logger
from chatbridge.relay.delivery import BroadcastSink, DeliveryController
from chatbridge.relay.events import ChatEvent
from chatbridge.relay.normalizer import TextNormalizer
from chatbridge.relay.shortlink import ShortLinkResolver
from chatbridge.scheduler.scheduler import RelayScheduler
from chatbridge.scheduler.window import ScheduleWindow

log = get_logger(__name__)


class RelayEngine:

    def __init__(
        self,
        settings: Settings,
        sink: BroadcastSink,
        *,
        gateway: Optional[RelayGateway] = None,
        resolver: Optional[ShortLinkResolver] = None,
    ):
        self._settings = settings
        self._forwarding = settings.forwarding

        self.gateway = gateway or RelayGateway(
            self.handle_game_message,
            token=settings.gateway_token or "",
            host=settings.gateway.host,
            port=settings.gateway.port,
        )
        self.controller = DeliveryController.from_settings(
            settings, sink, notify=self.send_notice
        )
        self.resolver = resolver or ShortLinkResolver.from_settings(settings)
        self.normalizer = TextNormalizer(self.resolver)
        self.scheduler: Optional[RelayScheduler] = None
        if settings.schedule.enabled:
            self.scheduler = RelayScheduler(
                ScheduleWindow.from_config(settings.schedule), self.controller
            )

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._settings.gateway.enabled:
            await self.gateway.start()
        if self.scheduler is not None:
            self.scheduler.arm()
        log.info(
            "engine.started",
            channels=self.controller.targets(),
            shortlink=self.resolver.mode.value,
            schedule=self.scheduler is not None,
        )

    async def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel()
        await self.controller.close()
        await self.gateway.shutdown()
        log.info("engine.stopped")

    # ─────────────────────────────────────────────────────────────────────────
    # Game → chat
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_game_message(self, message: str) -> None:
        await self.controller.submit(message)

    async def send_notice(self, text: str) -> None:
        """Push a bridge notice to the game, signed by the configured sender."""
        await self.gateway.send(make_envelope(self._forwarding.notice_sender, text))

    # ─────────────────────────────────────────────────────────────────────────
    # Chat → game
    # ─────────────────────────────────────────────────────────────────────────

    def is_bridged(self, event: ChatEvent) -> bool:
        """True when the event comes from a configured channel or the fallback channel."""
        channel = self.controller.channels.get(event.platform)
        if channel is not None and channel == event.channel_id:
            return True
        fallback = self._settings.fallback_channel
        return fallback is not None and event.channel_id == fallback

    async def handle_chat_event(self, event: ChatEvent) -> bool:
        """
        Relay one chat message into the game.

        Returns True when an envelope was written to the game peer.
        """
        if not self.is_bridged(event):
            return False
        if not self.gateway.has_peer:
            log.debug("engine.chat_skipped", reason="no game peer", channel=event.channel_ref)
            return False

        trigger_mode = self._forwarding.chat_trigger_enabled
        if trigger_mode and event.first_token() != self._forwarding.chat_trigger:
            return False

        try:
            text = await self.normalizer.normalize(event.elements, strip_command=trigger_mode)
        except ResolverError as e:
            log.warning("engine.chat_dropped", reason="shortlink failed", error=str(e))
            return False

        return await self.gateway.send(make_envelope(event.user_name, text))

    # ─────────────────────────────────────────────────────────────────────────
    # Platform presence
    # ─────────────────────────────────────────────────────────────────────────

    def on_login(self, platform: str, channel_id: Optional[str] = None) -> None:
        """A platform bot came online; start delivering to its channel."""
        channel_id = channel_id or self._settings.channels.get(platform)
        if channel_id is None:
            log.warning("engine.login_ignored", platform=platform, reason="no channel configured")
            return
        self.controller.add_channel(platform, channel_id)
        if self.scheduler is not None:
            self.scheduler.arm()
        else:
            self.controller.set_enabled(True)
        log.info("engine.platform_online", platform=platform, channel=channel_id)

    def on_logout(self, platform: str) -> None:
        """A platform bot went offline; stop delivering to its channel."""
        self.controller.remove_channel(platform)
        if not self.controller.channels:
            self.controller.set_enabled(False)
            if self.scheduler is not None:
                self.scheduler.cancel()
        log.info("engine.platform_offline", platform=platform)
