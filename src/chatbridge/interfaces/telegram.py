"""
interfaces/telegram.py — Telegram platform adapter

Bridges one or more Telegram chats with the game, using python-telegram-bot.

  - Inbound: text, captions, photos and stickers from bridged chats become
    ChatEvents handed to the relay engine.
  - Outbound: the adapter is the engine's broadcast sink. Every
    ``telegram:<chat_id>`` target gets one ``send_message``; targets of
    other platforms are ignored.
  - Telegram flood control (``RetryAfter``) surfaces as RateLimitError so
    the delivery controller can fail over to the fallback chat.

Usage:
    python -m chatbridge --interface telegram
"""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING, Optional, Sequence

from telegram import Message, Update
from telegram.error import Forbidden, RetryAfter, TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from chatbridge.config.settings import Settings
from chatbridge.exceptions import DeliveryError, RateLimitError, SinkUnavailableError
from chatbridge.observability.logger import get_logger
from chatbridge.relay.events import ChatEvent, Element

if TYPE_CHECKING:
    from chatbridge.relay.engine import RelayEngine

log = get_logger(__name__)

PLATFORM = "telegram"

# file_path URLs look like https://api.telegram.org/file/bot<token>/photos/x.jpg
_BOT_TOKEN_SEGMENT = re.compile(r"/bot\d+:[A-Za-z0-9_-]+(?=/)")


def strip_bot_token(url: str, token: Optional[str] = None) -> str:
    """Remove the bot token segment from a Telegram file URL."""
    url = _BOT_TOKEN_SEGMENT.sub("", url)
    if token:
        url = url.replace(f"/bot{token}", "").replace(token, "")
    return url


class TelegramBridge:
    """Telegram bot that relays chat messages and receives game broadcasts."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._app: Optional[Application] = None
        self._engine: Optional["RelayEngine"] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self, engine: "RelayEngine") -> None:
        """Start polling and report the login to the engine."""
        token = self._settings.telegram_bot_token
        if not token:
            raise RuntimeError("TELEGRAM_BOT_TOKEN is not set.")

        self._engine = engine
        self._app = Application.builder().token(token).build()
        self._app.add_handler(
            MessageHandler(
                (filters.TEXT | filters.PHOTO | filters.Sticker.ALL) & ~filters.COMMAND,
                self._on_message,
            )
        )

        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling()

        engine.on_login(PLATFORM)
        log.info("telegram.started", chat=self._settings.channels.get(PLATFORM))

    async def stop(self) -> None:
        if self._engine is not None:
            self._engine.on_logout(PLATFORM)
        app, self._app = self._app, None
        if app is not None:
            if app.updater is not None and app.updater.running:
                await app.updater.stop()
            await app.stop()
            await app.shutdown()
        log.info("telegram.stopped")

    # ── Outbound (broadcast sink) ─────────────────────────────────────────────

    async def broadcast(self, targets: Sequence[str], text: str) -> None:
        """
        Post ``text`` to every ``telegram:`` target.

        Raises:
            SinkUnavailableError: bot not started, or it lost access to a chat.
            RateLimitError:       Telegram flood control kicked in.
            DeliveryError:        any other Telegram API failure.
        """
        chat_ids = [t.split(":", 1)[1] for t in targets if t.startswith(f"{PLATFORM}:")]
        if not chat_ids:
            return
        if self._app is None:
            raise SinkUnavailableError("Telegram bot is not running.")

        for chat_id in chat_ids:
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=text)
            except RetryAfter as e:
                retry_after = e.retry_after
                if not isinstance(retry_after, (int, float)):
                    retry_after = retry_after.total_seconds()
                raise RateLimitError(
                    f"Telegram flood control on chat {chat_id}", retry_after=float(retry_after)
                ) from e
            except Forbidden as e:
                raise SinkUnavailableError(f"Bot cannot post to chat {chat_id}: {e}") from e
            except TelegramError as e:
                raise DeliveryError(f"Telegram send to chat {chat_id} failed: {e}") from e

    # ── Inbound ───────────────────────────────────────────────────────────────

    async def _on_message(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if message is None or self._engine is None:
            return
        event = await self.to_event(message)
        if event.elements:
            await self._engine.handle_chat_event(event)

    async def to_event(self, message: Message) -> ChatEvent:
        """Translate a Telegram message into a ChatEvent."""
        elements: list[Element] = []

        body = message.text or message.caption
        if body:
            elements.append(Element.text(body))

        if message.photo:
            largest = max(message.photo, key=lambda p: p.width * p.height)
            file = await largest.get_file()
            src = strip_bot_token(file.file_path or "", self._settings.telegram_bot_token)
            elements.append(Element.image(src))

        if message.sticker is not None:
            children = [Element.text(message.sticker.emoji)] if message.sticker.emoji else []
            elements.append(Element("emoji", children=children))

        user = message.from_user
        name = user.full_name if user is not None else (message.chat.title or "?")
        return ChatEvent(
            platform=PLATFORM,
            channel_id=str(message.chat_id),
            user_name=name,
            elements=elements,
        )


# ── Entry point ───────────────────────────────────────────────────────────────


async def run_telegram(settings: Settings, log, stop_event: asyncio.Event) -> None:
    """Run the engine with the Telegram adapter until ``stop_event`` is set."""
    from chatbridge.relay.engine import RelayEngine

    bridge = TelegramBridge(settings)
    engine = RelayEngine(settings, sink=bridge)
    await engine.start()
    try:
        await bridge.start(engine)
        log.info("telegram_bridge.running")
        await stop_event.wait()
    finally:
        await bridge.stop()
        await engine.stop()
