"""
relay/normalizer.py — Text Normalizer

Flattens a chat message element tree into the single line of text that is
sent to the game. Links and images are passed through the short-link
resolver so they stay readable in the game chat.

    text   → content, every link replaced by " [链接] <resolved> "
    img    → " [表情/图片] <resolved src> "
    *emoji → " /<type> " followed by its children
    other  → nothing
"""

from __future__ import annotations

import re
from typing import Iterable

from chatbridge.relay.events import Element
from chatbridge.relay.shortlink import ShortLinkResolver

# http(s) URLs, bare www. domains, markdown [link](url), and bare paths to
# common media/page files. Word boundaries are ASCII-only: CJK characters next
# to a link are never part of it.
LINK_PATTERN = re.compile(
    r"\bhttps?://\S+\b"
    r"|\bwww\.\S+\b"
    r"|\[link\]\((?:https?|www)://\S+\)"
    r"|\S+\.(?:html|jpg|png|gif|mp3|mp4)\b",
    re.ASCII,
)

LINK_LABEL = "[链接]"
IMAGE_LABEL = "[表情/图片]"


class TextNormalizer:
    """Turns element trees into flat relay text."""

    def __init__(self, resolver: ShortLinkResolver):
        self._resolver = resolver

    async def normalize(self, elements: Iterable[Element], strip_command: bool = False) -> str:
        """
        Flatten ``elements`` depth-first into one string.

        With ``strip_command`` the first space-delimited token (the trigger
        command the caller already matched) is removed; text without a space
        becomes empty.

        Raises:
            ResolverError: a link could not be shortened.
        """
        parts = [await self._element(el) for el in elements]
        text = "".join(parts)
        if strip_command:
            head, sep, rest = text.partition(" ")
            text = rest if sep else ""
        return text

    async def _element(self, element: Element) -> str:
        if "emoji" in element.type:
            out = f" /{element.type} "
            for child in element.children:
                out += await self._element(child)
            return out
        if element.type == "img":
            src = str(element.attrs.get("src", ""))
            return f" {IMAGE_LABEL} {await self._resolver.resolve(src)} "
        if element.type == "text":
            return await self._text(str(element.attrs.get("content", "")))
        return ""

    async def _text(self, content: str) -> str:
        out: list[str] = []
        last = 0
        for match in LINK_PATTERN.finditer(content):
            resolved = await self._resolver.resolve(match.group(0))
            out.append(content[last:match.start()])
            out.append(f" {LINK_LABEL} {resolved} ")
            last = match.end()
        out.append(content[last:])
        return "".join(out)
