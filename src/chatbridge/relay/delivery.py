"""
relay/delivery.py — Delivery Controller

Decides whether a game → chat message is delivered, queues it, and drains
the queue through a broadcast sink (the chat platform adapter).

State machine:

    enabled ─────────────► rate limit ──┬── fallback configured ──► using_fallback
       ▲                                │                               │ rate limit
       │                                └── no fallback ─────────┐     ▼
       │                                                         ▼   fallback_exhausted
       └──── reset_failover() (midnight timer / scheduler open) ◄── SUSPENDED

While suspended, the game side is told once (the suspended notice) and
every further message is dropped.

Usage:
    controller = DeliveryController(sink, channels={"telegram": "-100123"},
                                    notify=engine.send_notice)
    await controller.submit("[Survival] <Alice> hi")
"""

from __future__ import annotations

import asyncio
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from chatbridge.config.settings import DEFAULT_SUSPENDED_NOTICE
from chatbridge.exceptions import RateLimitError, SinkUnavailableError
from chatbridge.observability.logger import get_logger
from chatbridge.scheduler.window import next_local_midnight

log = get_logger(__name__)

NoticeCallback = Callable[[str], Awaitable[None]]

_GAME_CHAT_LINE = re.compile(r"\[.*?\] <.*?>")
_PLAYER_NAME = re.compile(r"<(.+?)>")


class BroadcastSink(Protocol):
    """Anything that can post one text to a list of ``platform:id`` targets."""

    async def broadcast(self, targets: Sequence[str], text: str) -> None: ...


def filter_game_message(
    message: str, *, trigger_enabled: bool, trigger: str
) -> Optional[str]:
    """
    Apply the game → chat trigger rule.

    Returns the text to deliver, or None when the message must be dropped.
    A player line ``[tag] <name> <trigger> rest...`` is rewritten to
    ``[tag] name说: rest...``; lines that are not player chat pass through.
    """
    if not trigger_enabled:
        return message
    if not _GAME_CHAT_LINE.search(message):
        return message

    parts = message.split(" ")
    if len(parts) < 3 or parts[2] != trigger:
        return None

    tag, name = parts[0], parts[1]
    player = _PLAYER_NAME.search(name)
    if player:
        name = player.group(1)
    return " ".join([tag, f"{name}说:", *parts[3:]])


@dataclass
class DeliveryState:
    enabled: bool = True
    using_fallback: bool = False
    fallback_exhausted: bool = False
    pending_queue: deque[str] = field(default_factory=deque)
    awaiting_flush: bool = False
    active_channel_target: Optional[str] = None
    notice_sent: bool = False

    @property
    def suspended(self) -> bool:
        return not self.enabled or (self.using_fallback and self.fallback_exhausted)


class DeliveryController:
    """
    Queues game messages and delivers them to every bridged channel.

    Args:
        sink:               Broadcast sink (platform adapter).
        channels:           Mapping platform → channel id.
        primary_platform:   Platform whose channel fails over to the fallback.
        passive:            Batch messages behind a flush timer instead of
                            flushing on every submit.
        flush_delay:        Seconds a passive flush waits.
        fallback_channel:   Channel id used after the first rate limit.
        notify:             Coroutine that pushes a notice to the game side.
        daily_reset:        Arm a midnight timer that clears the failover
                            state. Off when the scheduler owns that reset.
    """

    def __init__(
        self,
        sink: BroadcastSink,
        *,
        channels: Optional[dict[str, str]] = None,
        primary_platform: Optional[str] = None,
        passive: bool = False,
        flush_delay: float = 2.0,
        fallback_channel: Optional[str] = None,
        notify: Optional[NoticeCallback] = None,
        suspended_notice: str = DEFAULT_SUSPENDED_NOTICE,
        trigger_enabled: bool = False,
        trigger: str = "pd",
        daily_reset: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._sink = sink
        self._channels: dict[str, str] = dict(channels or {})
        self._primary = primary_platform or next(iter(self._channels), None)
        self._passive = passive
        self._flush_delay = flush_delay
        self._fallback = fallback_channel or None
        self._notify = notify
        self._suspended_notice = suspended_notice
        self._trigger_enabled = trigger_enabled
        self._trigger = trigger
        self._daily_reset = daily_reset
        self._clock = clock

        self.state = DeliveryState(active_channel_target=self._primary_channel())
        self._lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        self._reset_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls, settings, sink: BroadcastSink, notify: Optional[NoticeCallback] = None
    ) -> "DeliveryController":
        return cls(
            sink,
            channels=settings.channels,
            primary_platform=settings.primary_platform,
            passive=settings.delivery.passive,
            flush_delay=settings.delivery.flush_delay_seconds,
            fallback_channel=settings.fallback_channel,
            notify=notify,
            suspended_notice=settings.forwarding.suspended_notice,
            trigger_enabled=settings.forwarding.game_trigger_enabled,
            trigger=settings.forwarding.game_trigger,
            daily_reset=not settings.schedule.enabled,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Channel map
    # ─────────────────────────────────────────────────────────────────────────

    def _primary_channel(self) -> Optional[str]:
        if self._primary is None:
            return None
        return self._channels.get(self._primary)

    def add_channel(self, platform: str, channel_id: str) -> None:
        self._channels[platform] = str(channel_id)
        if self._primary is None:
            self._primary = platform
        if platform == self._primary:
            if self.state.using_fallback and self._fallback:
                self.state.active_channel_target = self._fallback
            else:
                self.state.active_channel_target = str(channel_id)
        log.info("delivery.channel_added", platform=platform, channel=channel_id)

    def remove_channel(self, platform: str) -> None:
        if self._channels.pop(platform, None) is not None:
            log.info("delivery.channel_removed", platform=platform)
        if platform == self._primary:
            self.state.active_channel_target = None

    @property
    def channels(self) -> dict[str, str]:
        return dict(self._channels)

    def targets(self) -> list[str]:
        """``platform:id`` targets, the primary platform pointing at the active channel."""
        out: list[str] = []
        for platform, channel_id in self._channels.items():
            if platform == self._primary:
                channel_id = self.state.active_channel_target or channel_id
            out.append(f"{platform}:{channel_id}")
        return out

    # ─────────────────────────────────────────────────────────────────────────
    # Enable / failover
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def suspended(self) -> bool:
        return self.state.suspended

    def set_enabled(self, enabled: bool) -> None:
        was_suspended = self.state.suspended
        self.state.enabled = enabled
        if enabled and was_suspended and not self.state.suspended:
            self.state.notice_sent = False
        log.info("delivery.enabled" if enabled else "delivery.disabled")

    def reset_failover(self) -> None:
        """Leave the fallback channel and lift a rate-limit suspension."""
        self.state.using_fallback = False
        self.state.fallback_exhausted = False
        self.state.active_channel_target = self._primary_channel()
        if not self.state.suspended:
            self.state.notice_sent = False
        log.info("delivery.failover_reset", channel=self.state.active_channel_target)

    def _enter_failover(self) -> bool:
        """Record one rate-limit hit. Returns True when the queue should be retried."""
        st = self.state
        retry = False
        if self._fallback and not st.using_fallback:
            st.using_fallback = True
            st.active_channel_target = self._fallback
            retry = True
            log.warning("delivery.rate_limited", action="switch_to_fallback",
                        channel=self._fallback)
        else:
            st.using_fallback = True
            st.fallback_exhausted = True
            log.warning("delivery.rate_limited", action="suspend")

        if st.suspended and st.pending_queue:
            log.warning("delivery.queue_dropped", count=len(st.pending_queue))
            st.pending_queue.clear()

        if self._daily_reset:
            self.arm_daily_reset()
        return retry

    def arm_daily_reset(self) -> None:
        """Clear the failover state at the next local midnight."""
        if self._reset_task is not None:
            self._reset_task.cancel()
        now = self._clock()
        delay = (next_local_midnight(now) - now).total_seconds()
        self._reset_task = asyncio.create_task(self._daily_reset_after(delay))
        log.debug("delivery.reset_armed", seconds=round(delay))

    async def _daily_reset_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reset_task = None
        self.reset_failover()

    # ─────────────────────────────────────────────────────────────────────────
    # Submit / flush
    # ─────────────────────────────────────────────────────────────────────────

    async def submit(self, message: str) -> None:
        """Accept one game message for delivery."""
        if self.state.suspended:
            await self._send_suspended_notice()
            log.debug("delivery.dropped", reason="suspended")
            return

        text = filter_game_message(
            message, trigger_enabled=self._trigger_enabled, trigger=self._trigger
        )
        if text is None:
            log.debug("delivery.filtered", message=message)
            return

        self.state.pending_queue.append(text)
        if not self._passive:
            await self.flush()
        elif not self.state.awaiting_flush:
            self.state.awaiting_flush = True
            self._flush_task = asyncio.create_task(self._flush_later())

    async def _send_suspended_notice(self) -> None:
        if self.state.notice_sent or self._notify is None:
            return
        self.state.notice_sent = True
        try:
            await self._notify(self._suspended_notice)
        except Exception:
            log.exception("delivery.notice_failed")

    async def flush(self) -> None:
        """Drain the messages queued when the flush starts."""
        async with self._lock:
            retry = await self._drain()
            if retry:
                await self._drain()

    async def _drain(self) -> bool:
        st = self.state
        count = len(st.pending_queue)
        targets = self.targets()
        delivered = 0

        for _ in range(count):
            if st.suspended:
                if st.pending_queue:
                    log.info("delivery.queue_dropped", count=len(st.pending_queue))
                    st.pending_queue.clear()
                break
            if not st.pending_queue:
                break

            text = st.pending_queue[0]
            try:
                await self._sink.broadcast(targets, text)
            except RateLimitError as e:
                log.warning("delivery.broadcast_rate_limited", retry_after=e.retry_after)
                return self._enter_failover()
            except SinkUnavailableError as e:
                log.error("delivery.sink_unavailable", error=str(e))
            except Exception as e:
                log.error("delivery.broadcast_failed", error=str(e), error_type=type(e).__name__)
            else:
                delivered += 1

            if st.pending_queue and st.pending_queue[0] is text:
                st.pending_queue.popleft()

        if delivered:
            log.debug("delivery.flushed", delivered=delivered, targets=targets)
        return False

    async def _flush_later(self) -> None:
        try:
            await asyncio.sleep(self._flush_delay)
            await self.flush()
        finally:
            self.state.awaiting_flush = False
            self._flush_task = None
        if self.state.pending_queue and not self.state.suspended:
            self.state.awaiting_flush = True
            self._flush_task = asyncio.create_task(self._flush_later())

    async def close(self) -> None:
        """Cancel the flush and reset timers and drop anything still queued."""
        for task in (self._flush_task, self._reset_task):
            if task is not None and not task.done():
                task.cancel()
        self._flush_task = None
        self._reset_task = None
        self.state.awaiting_flush = False
        self.state.pending_queue.clear()
