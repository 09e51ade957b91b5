"""
relay/shortlink.py — Short-Link Resolver

Replaces URLs found in chat messages before they are relayed into the game,
where long links are unreadable. Three modes:

    enabled   — POST the URL to the short-link API, return the short link
    disabled  — return the URL unchanged
    redact    — return a fixed placeholder, no network call

The API (urlc.cn compatible) takes ``{"url", "expiry"}`` with an
``Authorization: Token <secret>`` header and answers
``{"error": 0, "short": "...", "msg": "..."}``. Short links expire the day
after they are created.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Callable, Optional

import httpx

from chatbridge.config.settings import DEFAULT_SHORTLINK_API, ShortLinkMode
from chatbridge.exceptions import ResolverError
from chatbridge.observability.logger import get_logger

log = get_logger(__name__)


class ShortLinkResolver:
    """Resolves one URL to its relay replacement according to the mode."""

    def __init__(
        self,
        mode: ShortLinkMode = ShortLinkMode.DISABLED,
        *,
        secret: Optional[str] = None,
        api_url: str = DEFAULT_SHORTLINK_API,
        placeholder: str = "省略",
        timeout: float = 10.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._mode = ShortLinkMode(mode)
        self._secret = secret or ""
        self._api_url = api_url
        self._placeholder = placeholder
        self._timeout = timeout
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "ShortLinkResolver":
        cfg = settings.shortlink
        return cls(
            cfg.mode,
            secret=settings.shortlink_secret,
            api_url=cfg.api_url,
            placeholder=cfg.placeholder,
            timeout=cfg.timeout_seconds,
        )

    @property
    def mode(self) -> ShortLinkMode:
        return self._mode

    def expiry(self) -> str:
        """Tomorrow's date as YYYY-MM-DD."""
        tomorrow: date = self._clock().date() + timedelta(days=1)
        return tomorrow.strftime("%Y-%m-%d")

    async def resolve(self, url: str) -> str:
        """
        Return the replacement text for ``url``.

        Raises:
            ResolverError: the API rejected the URL or could not be reached.
        """
        if self._mode is ShortLinkMode.DISABLED:
            return url
        if self._mode is ShortLinkMode.REDACT:
            return self._placeholder
        return await self._shorten(url)

    async def _shorten(self, url: str) -> str:
        payload = {"url": url, "expiry": self.expiry()}
        headers = {"Authorization": f"Token {self._secret}"}

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                r = await client.post(self._api_url, json=payload, headers=headers)
                r.raise_for_status()
                body = r.json()
        except httpx.HTTPStatusError as e:
            raise ResolverError(url, f"HTTP {e.response.status_code} from short-link API") from e
        except httpx.HTTPError as e:
            raise ResolverError(url, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise ResolverError(url, "short-link API returned a non-JSON body") from e

        if not isinstance(body, dict):
            raise ResolverError(url, "short-link API returned an unexpected payload")

        error = body.get("error")
        if type(error) is int and error == 0 and body.get("short"):
            log.debug("shortlink.resolved", url=url, short=body["short"])
            return str(body["short"])

        reason = body.get("msg") or f"error code {error!r}"
        raise ResolverError(url, str(reason))
