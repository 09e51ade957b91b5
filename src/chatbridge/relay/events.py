"""
relay/events.py — Chat-side message model

A chat message arrives as a tree of elements (text runs, images, emoji
containers). Platform adapters translate their SDK objects into these
types before handing them to the relay engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Element:
    """One node of a chat message tree."""
    type: str
    attrs: dict[str, Any] = field(default_factory=dict)
    children: list["Element"] = field(default_factory=list)

    @classmethod
    def text(cls, content: str) -> "Element":
        return cls("text", {"content": content})

    @classmethod
    def image(cls, src: str) -> "Element":
        return cls("img", {"src": src})


@dataclass(frozen=True)
class ChatEvent:
    """A message posted in a bridged chat channel."""
    platform: str
    channel_id: str
    user_name: str
    elements: list[Element] = field(default_factory=list)

    @property
    def channel_ref(self) -> str:
        return f"{self.platform}:{self.channel_id}"

    def first_token(self) -> Optional[str]:
        """First space-delimited word of the leading text element, if any."""
        if not self.elements or self.elements[0].type != "text":
            return None
        content = str(self.elements[0].attrs.get("content", ""))
        return content.split(" ")[0]
