"""Fetch a web page (a recommender's profile, faculty page, LinkedIn export) as text."""
from __future__ import annotations

import logging
from urllib.parse import urlparse

import httpx

from petition.config import get_settings
from petition.extraction import html_to_text

log = logging.getLogger(__name__)

_USER_AGENT = "PetitionBot/1.0 (+https://petition.local)"
_TIMEOUT = 15.0


class FetchError(Exception):
    """A URL could not be fetched or held too little text."""


def _check_url(url: str) -> str:
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise FetchError(f"Invalid URL: {url or '(empty)'}")
    return url


async def _fetch_url(url: str) -> str:
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(_TIMEOUT),
        headers={"User-Agent": _USER_AGENT},
    ) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.text


async def fetch_page_text(url: str) -> str:
    """Readable text of a page, capped at ``max_url_chars``.

    Raises FetchError on transport errors, non-2xx responses, or pages with
    fewer than ``min_document_chars`` characters of text.
    """
    settings = get_settings()
    url = _check_url(url)
    try:
        raw_html = await _fetch_url(url)
    except httpx.HTTPError as exc:
        log.warning("Fetch failed for %s: %s", url, exc)
        raise FetchError(f"Could not fetch {url}") from exc

    text = html_to_text(raw_html)
    if len(text) < settings.min_document_chars:
        raise FetchError(f"Not enough readable text at {url}")
    return text[:settings.max_url_chars]
