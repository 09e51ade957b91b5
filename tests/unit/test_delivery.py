"""
tests/unit/test_delivery.py — Delivery Controller tests

Covers:
  - game → chat trigger filter
  - immediate and passive (batched) delivery, FIFO order
  - flush snapshot: messages queued mid-flush wait for the next cycle
  - rate-limit failover with and without a fallback channel
  - suspension notice sent once per suspension episode
  - error classification (sink unavailable / generic errors)
  - daily reset timer, channel map, close()
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatbridge.config.settings import Settings
from chatbridge.exceptions import DeliveryError, RateLimitError, SinkUnavailableError
from chatbridge.relay.delivery import DeliveryController, DeliveryState, filter_game_message

NOTICE = "消息推送受限，不再向频道转发消息！"


def _sink(side_effect=None) -> MagicMock:
    sink = MagicMock()
    sink.broadcast = AsyncMock(side_effect=side_effect)
    return sink


def _controller(sink, **kwargs) -> DeliveryController:
    kwargs.setdefault("channels", {"telegram": "-100"})
    kwargs.setdefault("daily_reset", False)
    return DeliveryController(sink, **kwargs)


def _texts(sink) -> list[str]:
    return [c.args[1] for c in sink.broadcast.await_args_list]


def _targets(sink) -> list[list[str]]:
    return [list(c.args[0]) for c in sink.broadcast.await_args_list]


# ─────────────────────────────────────────────────────────────────────────────
# Trigger filter
# ─────────────────────────────────────────────────────────────────────────────

class TestFilterGameMessage:
    def test_trigger_off_forwards_verbatim(self):
        msg = "[Survival] <Alice> hi"
        assert filter_game_message(msg, trigger_enabled=False, trigger="qq") == msg

    def test_trigger_on_without_trigger_word_drops(self):
        assert filter_game_message(
            "[Survival] <Alice> hi", trigger_enabled=True, trigger="qq"
        ) is None

    def test_trigger_word_rewrites(self):
        out = filter_game_message(
            "[Survival] <Alice> pd hello there", trigger_enabled=True, trigger="pd"
        )
        assert out == "[Survival] Alice说: hello there"

    def test_trigger_word_alone(self):
        out = filter_game_message("[Survival] <Alice> pd", trigger_enabled=True, trigger="pd")
        assert out == "[Survival] Alice说:"

    def test_too_few_tokens_dropped(self):
        assert filter_game_message("[Survival] <Alice>", trigger_enabled=True, trigger="pd") is None

    def test_non_chat_line_forwarded(self):
        msg = "Alice joined the game"
        assert filter_game_message(msg, trigger_enabled=True, trigger="pd") == msg

    def test_chat_line_found_anywhere_in_message(self):
        msg = "Server: [Survival] <Alice> hi"
        assert filter_game_message(msg, trigger_enabled=True, trigger="pd") is None

    def test_player_name_extracted_from_brackets(self):
        out = filter_game_message(
            "[Survival] <Alice>: pd hi", trigger_enabled=True, trigger="pd"
        )
        assert out == "[Survival] Alice说: hi"


class TestDeliveryState:
    def test_suspended_flags(self):
        assert not DeliveryState().suspended
        assert DeliveryState(enabled=False).suspended
        assert not DeliveryState(using_fallback=True).suspended
        assert DeliveryState(using_fallback=True, fallback_exhausted=True).suspended


# ─────────────────────────────────────────────────────────────────────────────
# Delivery
# ─────────────────────────────────────────────────────────────────────────────

class TestImmediateDelivery:
    @pytest.mark.asyncio
    async def test_submit_broadcasts_now(self):
        sink = _sink()
        ctl = _controller(sink, channels={"telegram": "-100", "console": "stdin"})
        await ctl.submit("[Survival] <Alice> hi")
        sink.broadcast.assert_awaited_once_with(
            ["telegram:-100", "console:stdin"], "[Survival] <Alice> hi"
        )
        assert not ctl.state.pending_queue

    @pytest.mark.asyncio
    async def test_filtered_message_not_sent(self):
        sink = _sink()
        ctl = _controller(sink, trigger_enabled=True, trigger="qq")
        await ctl.submit("[Survival] <Alice> hi")
        sink.broadcast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rewritten_message_sent(self):
        sink = _sink()
        ctl = _controller(sink, trigger_enabled=True, trigger="pd")
        await ctl.submit("[Survival] <Alice> pd hi")
        assert _texts(sink) == ["[Survival] Alice说: hi"]


class TestPassiveDelivery:
    @pytest.mark.asyncio
    async def test_batch_flushed_once_in_order(self):
        sink = _sink()
        ctl = _controller(sink, passive=True, flush_delay=0.05)
        with patch.object(ctl, "flush", wraps=ctl.flush) as flush_spy:
            for i in range(3):
                await ctl.submit(f"m{i}")
            assert ctl.state.awaiting_flush
            sink.broadcast.assert_not_awaited()

            await asyncio.sleep(0.2)

        assert flush_spy.await_count == 1
        assert _texts(sink) == ["m0", "m1", "m2"]
        assert not ctl.state.awaiting_flush
        assert not ctl.state.pending_queue

    @pytest.mark.asyncio
    async def test_messages_queued_during_flush_wait_for_next_cycle(self):
        ctl: DeliveryController

        async def _broadcast(targets, text):
            if text == "a":
                await ctl.submit("late")

        sink = _sink(side_effect=_broadcast)
        ctl = _controller(sink, passive=True, flush_delay=10)
        await ctl.submit("a")
        await ctl.submit("b")

        await ctl.flush()

        assert _texts(sink) == ["a", "b"]
        assert list(ctl.state.pending_queue) == ["late"]
        await ctl.close()

    @pytest.mark.asyncio
    async def test_timer_rearmed_when_items_remain(self):
        ctl: DeliveryController

        async def _broadcast(targets, text):
            if text == "a":
                await ctl.submit("late")

        sink = _sink(side_effect=_broadcast)
        ctl = _controller(sink, passive=True, flush_delay=0.02)
        await ctl.submit("a")
        await asyncio.sleep(0.2)

        assert _texts(sink) == ["a", "late"]
        assert not ctl.state.pending_queue
        await ctl.close()

    @pytest.mark.asyncio
    async def test_close_cancels_pending_flush(self):
        sink = _sink()
        ctl = _controller(sink, passive=True, flush_delay=0.05)
        await ctl.submit("never")
        await ctl.close()
        await asyncio.sleep(0.1)
        sink.broadcast.assert_not_awaited()
        assert not ctl.state.pending_queue


# ─────────────────────────────────────────────────────────────────────────────
# Failover and suspension
# ─────────────────────────────────────────────────────────────────────────────

class TestFailover:
    @pytest.mark.asyncio
    async def test_fallback_two_hits_exhaust(self):
        sink = _sink(side_effect=RateLimitError("flood", retry_after=30))
        ctl = _controller(sink, fallback_channel="-200")
        await ctl.submit("hi")

        assert _targets(sink) == [["telegram:-100"], ["telegram:-200"]]
        assert ctl.state.using_fallback
        assert ctl.state.fallback_exhausted
        assert ctl.suspended
        assert not ctl.state.pending_queue

    @pytest.mark.asyncio
    async def test_fallback_delivers_after_first_hit(self):
        sink = _sink(side_effect=[RateLimitError("flood"), None, None])
        ctl = _controller(sink, fallback_channel="-200")
        await ctl.submit("one")
        await ctl.submit("two")

        assert _targets(sink) == [["telegram:-100"], ["telegram:-200"], ["telegram:-200"]]
        assert _texts(sink) == ["one", "one", "two"]
        assert ctl.state.using_fallback
        assert not ctl.state.fallback_exhausted
        assert not ctl.suspended

    @pytest.mark.asyncio
    async def test_no_fallback_one_hit_suspends(self):
        sink = _sink(side_effect=RateLimitError("flood"))
        ctl = _controller(sink, passive=True, flush_delay=10)
        for text in ("a", "b", "c"):
            await ctl.submit(text)
        await ctl.flush()

        assert sink.broadcast.await_count == 1
        assert ctl.state.using_fallback and ctl.state.fallback_exhausted
        assert ctl.suspended
        assert not ctl.state.pending_queue
        await ctl.close()

    @pytest.mark.asyncio
    async def test_reset_failover_restores_primary(self):
        sink = _sink(side_effect=[RateLimitError("flood"), RateLimitError("flood"), None])
        ctl = _controller(sink, fallback_channel="-200")
        await ctl.submit("x")
        assert ctl.suspended

        ctl.reset_failover()

        assert not ctl.suspended
        assert ctl.state.active_channel_target == "-100"
        await ctl.submit("y")
        assert _targets(sink)[-1] == ["telegram:-100"]

    @pytest.mark.asyncio
    async def test_daily_reset_clears_failover(self):
        sink = _sink(side_effect=RateLimitError("flood"))
        ctl = DeliveryController(
            sink,
            channels={"telegram": "-100"},
            daily_reset=True,
            clock=lambda: datetime(2024, 1, 1, 23, 59, 59, 950000),
        )
        await ctl.submit("x")
        assert ctl.suspended

        await asyncio.sleep(0.2)

        assert not ctl.suspended
        assert not ctl.state.notice_sent
        await ctl.close()


class TestSuspension:
    @pytest.mark.asyncio
    async def test_notice_sent_once_per_episode(self):
        sink = _sink()
        notify = AsyncMock()
        ctl = _controller(sink, notify=notify)
        ctl.set_enabled(False)

        await ctl.submit("a")
        await ctl.submit("b")

        notify.assert_awaited_once_with(NOTICE)
        sink.broadcast.assert_not_awaited()

        ctl.set_enabled(True)
        ctl.set_enabled(False)
        await ctl.submit("c")
        assert notify.await_count == 2

    @pytest.mark.asyncio
    async def test_custom_notice_text(self):
        notify = AsyncMock()
        ctl = _controller(_sink(), notify=notify, suspended_notice="paused")
        ctl.set_enabled(False)
        await ctl.submit("a")
        notify.assert_awaited_once_with("paused")

    @pytest.mark.asyncio
    async def test_notice_failure_is_logged_not_raised(self):
        notify = AsyncMock(side_effect=RuntimeError("gateway down"))
        ctl = _controller(_sink(), notify=notify)
        ctl.set_enabled(False)
        await ctl.submit("a")
        assert ctl.state.notice_sent

    @pytest.mark.asyncio
    async def test_suspension_mid_flush_drops_rest(self):
        ctl: DeliveryController

        async def _broadcast(targets, text):
            ctl.set_enabled(False)

        sink = _sink(side_effect=_broadcast)
        ctl = _controller(sink, passive=True, flush_delay=10)
        for text in ("a", "b", "c"):
            await ctl.submit(text)
        await ctl.flush()

        assert _texts(sink) == ["a"]
        assert not ctl.state.pending_queue
        await ctl.close()


class TestErrorClassification:
    @pytest.mark.asyncio
    async def test_sink_unavailable_dropped_without_failover(self):
        sink = _sink(side_effect=[SinkUnavailableError("offline"), None])
        ctl = _controller(sink, fallback_channel="-200")
        await ctl.submit("lost")
        await ctl.submit("next")

        assert _texts(sink) == ["lost", "next"]
        assert not ctl.state.using_fallback
        assert not ctl.state.pending_queue

    @pytest.mark.asyncio
    async def test_generic_error_dropped(self):
        sink = _sink(side_effect=[DeliveryError("boom"), ValueError("bad"), None])
        ctl = _controller(sink)
        for text in ("a", "b", "c"):
            await ctl.submit(text)

        assert _texts(sink) == ["a", "b", "c"]
        assert not ctl.suspended


# ─────────────────────────────────────────────────────────────────────────────
# Channel map
# ─────────────────────────────────────────────────────────────────────────────

class TestChannels:
    def test_targets_use_active_channel_for_primary(self):
        ctl = _controller(_sink(), channels={"telegram": "-100", "console": "stdin"},
                          primary_platform="telegram", fallback_channel="-200")
        ctl.state.active_channel_target = "-200"
        assert ctl.targets() == ["telegram:-200", "console:stdin"]

    def test_add_and_remove_channel(self):
        ctl = _controller(_sink(), channels={})
        assert ctl.targets() == []
        ctl.add_channel("telegram", "-100")
        assert ctl.targets() == ["telegram:-100"]
        assert ctl.state.active_channel_target == "-100"
        ctl.remove_channel("telegram")
        assert ctl.targets() == []

    @pytest.mark.asyncio
    async def test_relogin_keeps_fallback_while_failed_over(self):
        sink = _sink(side_effect=[RateLimitError("flood"), None, None])
        ctl = _controller(sink, fallback_channel="-200")
        await ctl.submit("one")

        ctl.remove_channel("telegram")
        ctl.add_channel("telegram", "-100")
        await ctl.submit("two")

        assert _targets(sink) == [["telegram:-100"], ["telegram:-200"], ["telegram:-200"]]
        assert ctl.state.active_channel_target == "-200"

    def test_relogin_without_failover_uses_new_channel(self):
        ctl = _controller(_sink(), fallback_channel="-200")
        ctl.remove_channel("telegram")
        ctl.add_channel("telegram", "-300")
        assert ctl.targets() == ["telegram:-300"]

    def test_from_settings(self):
        settings = Settings(
            channels={"telegram": -100123},
            delivery={"passive": True, "fallback_enabled": True, "fallback_channel": "-2"},
            forwarding={"game_trigger_enabled": True, "game_trigger": "qq"},
        )
        ctl = DeliveryController.from_settings(settings, _sink())
        assert ctl.targets() == ["telegram:-100123"]
        assert ctl.state.active_channel_target == "-100123"
