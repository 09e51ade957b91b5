"""
interfaces/console.py — Console platform adapter

A local stand-in for a chat platform, handy for trying the relay without a
bot account. Game broadcasts are printed with rich; every line typed on
stdin is relayed to the game as a message from the ``console`` channel.

Usage:
    python -m chatbridge --interface console
"""

from __future__ import annotations

import asyncio
import getpass
from typing import Optional, Sequence

import aioconsole
from rich.console import Console
from rich.markup import escape

from chatbridge.config.settings import Settings
from chatbridge.observability.logger import get_logger
from chatbridge.relay.engine import RelayEngine
from chatbridge.relay.events import ChatEvent, Element

log = get_logger(__name__)

PLATFORM = "console"
CHANNEL_ID = "stdin"


class ConsoleBridge:
    """Prints broadcasts and turns stdin lines into chat events."""

    def __init__(self, console: Optional[Console] = None, user_name: Optional[str] = None):
        self.console = console or Console()
        self.user_name = user_name or getpass.getuser()

    async def broadcast(self, targets: Sequence[str], text: str) -> None:
        if not any(t.startswith(f"{PLATFORM}:") for t in targets):
            return
        self.console.print(f"[bold cyan]game[/] [dim]›[/] {escape(text)}")

    def to_event(self, line: str) -> ChatEvent:
        return ChatEvent(
            platform=PLATFORM,
            channel_id=CHANNEL_ID,
            user_name=self.user_name,
            elements=[Element.text(line)],
        )

    async def run(self, engine: RelayEngine, stop_event: asyncio.Event) -> None:
        """Read stdin until EOF, ``exit``/``quit`` or ``stop_event``."""
        engine.on_login(PLATFORM, CHANNEL_ID)
        self.console.print("[dim]Type a message to relay it to the game. 'exit' quits.[/]")
        try:
            while not stop_event.is_set():
                try:
                    line = await aioconsole.ainput("")
                except (EOFError, KeyboardInterrupt):
                    break

                line = line.strip()
                if not line:
                    continue
                if line.lower() in ("exit", "quit"):
                    break

                sent = await engine.handle_chat_event(self.to_event(line))
                if not sent:
                    self.console.print("[yellow]⚠ not relayed (no game connected or filtered)[/]")
        finally:
            engine.on_logout(PLATFORM)


async def run_console(settings: Settings, log, stop_event: asyncio.Event) -> None:
    """Run the engine with the console adapter until stdin closes or ``stop_event`` is set."""
    bridge = ConsoleBridge()
    engine = RelayEngine(settings, sink=bridge)
    await engine.start()
    bridge.console.print(
        f"[bold]chatbridge[/] listening on ws://{settings.gateway.host}:{engine.gateway.port}"
    )
    reader = asyncio.create_task(bridge.run(engine, stop_event))
    stopper = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({reader, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (reader, stopper):
            task.cancel()
        await asyncio.gather(reader, stopper, return_exceptions=True)
        await engine.stop()
        log.info("console_bridge.stopped")
