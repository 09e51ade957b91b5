"""
relay/ — Relay core

Component overview:
    ChatEvent, Element    Chat-side message model
    ShortLinkResolver     Link shortening / redaction
    TextNormalizer        Element tree → single line of game text
    DeliveryController    Game → chat queueing, failover and suspension
    RelayEngine           Wires everything to the gateway (relay.engine)
"""

from chatbridge.relay.events import ChatEvent, Element
from chatbridge.relay.shortlink import ShortLinkResolver
from chatbridge.relay.normalizer import TextNormalizer
from chatbridge.relay.delivery import DeliveryController, DeliveryState, filter_game_message

__all__ = [
    "ChatEvent",
    "Element",
    "ShortLinkResolver",
    "TextNormalizer",
    "DeliveryController",
    "DeliveryState",
    "filter_game_message",
]
