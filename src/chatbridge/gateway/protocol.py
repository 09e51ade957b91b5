"""
gateway/protocol.py — Relay WebSocket Wire Format

One JSON frame per message in each direction:

    game → bridge   {"message": "<text>"}                  (other keys ignored)
    bridge → game   {"sender": "<name>", "message": "<text>"}

The message text is always a single line; line breaks are flattened when an
envelope is built.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any

from chatbridge.exceptions import ProtocolError


# ─────────────────────────────────────────────────────────────────────────────
# Envelope
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Envelope:
    """The {sender, message} unit sent to the game peer."""
    sender: str
    message: str

    def to_json(self) -> str:
        """Serialize to a JSON string, keeping non-ASCII text readable."""
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "Envelope":
        """Parse a bridge → game frame (used by the game-side client)."""
        data = _decode_object(raw)
        return cls(
            sender=str(data.get("sender", "")),
            message=str(data.get("message", "")),
        )


def flatten(text: str) -> str:
    """Collapse every line break in ``text`` into a single space."""
    return " ".join(text.splitlines())


# ─────────────────────────────────────────────────────────────────────────────
# Decoding — game → bridge
# ─────────────────────────────────────────────────────────────────────────────

def _decode_object(raw: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Frame is not valid JSON: {e.msg} (pos {e.pos})") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"Frame must be a JSON object, got {type(data).__name__}")
    return data


def parse_game_frame(raw: str) -> str:
    """
    Extract the ``message`` field from a game → bridge text frame.

    Raises ProtocolError if the frame is not a JSON object or the field is
    missing or not a string.
    """
    data = _decode_object(raw)
    if "message" not in data:
        raise ProtocolError("Frame has no 'message' field")
    message = data["message"]
    if not isinstance(message, str):
        raise ProtocolError(
            f"'message' must be a string, got {type(message).__name__}"
        )
    return message


def make_game_frame(message: str) -> str:
    """Build a game → bridge frame (used by the game-side client)."""
    return json.dumps({"message": message}, ensure_ascii=False)


# ─────────────────────────────────────────────────────────────────────────────
# Factory helpers — bridge → game
# ─────────────────────────────────────────────────────────────────────────────

def make_envelope(sender: str, message: str) -> Envelope:
    """Build a chat → game envelope with a single-line message."""
    return Envelope(sender=sender, message=flatten(message))
