"""
Source Adapters -- Fetch the raw content of each document in the catalog.

Three kinds of source feed the knowledge base:

  - pdf:     a local file, converted to Markdown (see pdf_parser)
  - article: a Markdown article fetched over HTTP
  - slack:   a chat channel read page by page from a JSON API

Each catalog entry is a SourceSpec: its kind, its source_id, and an async
`fetch` callable returning either the document text or, for chat channels,
the list of "speaker: message" lines. The ingestion orchestrator only ever
sees SourceSpecs, so adding a new kind of source means adding a fetcher here
and nothing else.

Any transport or status failure raises SourceUnavailable. A chat channel is
never returned partially: if page 3 fails, the whole fetch fails, so a
half-read channel is never stored and then skipped forever after.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Optional

import httpx

from .config import Config
from .errors import SourceUnavailable
from .models import SourceKind
from .pdf_parser import extract_pdf_text
from .throttle import MinIntervalThrottle

logger = logging.getLogger(__name__)

FetchRaw = Callable[[], Awaitable[str | list[str]]]

# Upper bound on pages read from one channel.
MAX_CHAT_PAGES = 500


@dataclass(frozen=True)
class SourceSpec:
    """One document of the catalog and how to fetch it."""

    kind: SourceKind
    source_id: str
    fetch: FetchRaw

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.source_id}"


@dataclass(frozen=True)
class ChatMessage:
    speaker: Optional[str]
    text: str

    def render(self) -> str:
        """Format as "speaker: text", or just the text when the speaker is unknown."""
        if self.speaker and self.text:
            return f"{self.speaker}: {self.text}"
        return self.text


# =============================================================================
# Articles
# =============================================================================


def article_url(template: str, article_ids: list[str], article_id: str) -> str:
    """Build an article's URL; {number} is its 1-based position in article_ids."""
    try:
        number = article_ids.index(article_id) + 1
    except ValueError:
        raise SourceUnavailable(f"Unknown article ID: {article_id}") from None
    return template.format(number=number, article_id=article_id)


async def fetch_article(client: httpx.AsyncClient, url: str) -> str:
    """GET an article and return its body text."""
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise SourceUnavailable(f"Failed to fetch article {url}: {exc}") from exc

    logger.info("Fetched article %s (%d chars)", url, len(response.text))
    return response.text


# =============================================================================
# Chat feeds
# =============================================================================


def _parse_messages(raw_messages: list) -> list[ChatMessage]:
    messages = []
    for raw in raw_messages:
        if not isinstance(raw, dict):
            continue
        message = ChatMessage(speaker=raw.get("user"), text=str(raw.get("text") or ""))
        if message.render().strip():
            messages.append(message)
    return messages


async def fetch_chat_messages(
    client: httpx.AsyncClient,
    api_url: str,
    channel: str,
    throttle: Optional[MinIntervalThrottle] = None,
    max_pages: int = MAX_CHAT_PAGES,
) -> list[ChatMessage]:
    """
    Read every page of a channel, starting at page 1.

    Each page looks like {"messages": [{"user": ..., "text": ...}], "hasMore": bool}.
    Paging stops when hasMore is false or a page has no messages.

    Args:
        client: HTTP client used for every page.
        api_url: Endpoint taking ?channel=<name>&page=<n>.
        channel: Channel name.
        throttle: Optional courtesy delay between page requests.
        max_pages: Safety bound on the number of pages read.

    Returns:
        The channel's non-empty messages in page order.

    Raises:
        SourceUnavailable: if any page request fails or returns invalid JSON.
    """
    messages: list[ChatMessage] = []

    if throttle is not None:
        # The delay only spaces pages of one read; a new read starts at once.
        throttle.reset()

    for page in range(1, max_pages + 1):
        if throttle is not None:
            await throttle.wait()

        try:
            response = await client.get(api_url, params={"channel": channel, "page": page})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise SourceUnavailable(
                f"Failed to fetch page {page} of channel {channel}: {exc}"
            ) from exc
        except ValueError as exc:
            raise SourceUnavailable(
                f"Page {page} of channel {channel} is not valid JSON"
            ) from exc

        raw_messages = data.get("messages") if isinstance(data, dict) else None
        if not isinstance(raw_messages, list) or not raw_messages:
            break

        messages.extend(_parse_messages(raw_messages))

        if data.get("hasMore") is False:
            break
    else:
        logger.warning(
            "Channel %s still had more pages after %d, stopping", channel, max_pages
        )

    logger.info("Fetched %d messages from channel %s", len(messages), channel)
    return messages


async def fetch_chat_feed(
    client: httpx.AsyncClient,
    api_url: str,
    channel: str,
    throttle: Optional[MinIntervalThrottle] = None,
) -> list[str]:
    """Fetch a channel and render its messages as "speaker: text" lines."""
    messages = await fetch_chat_messages(client, api_url, channel, throttle)
    return [message.render() for message in messages]


# =============================================================================
# PDFs
# =============================================================================


async def fetch_pdf(path: Path) -> str:
    # PDF parsing is CPU-bound and synchronous; keep it off the event loop.
    return await asyncio.to_thread(extract_pdf_text, path)


# =============================================================================
# Catalog
# =============================================================================


def build_source_catalog(config: Config, http_client: httpx.AsyncClient) -> list[SourceSpec]:
    """
    Return every configured source in a stable order: PDFs, articles, channels.
    """
    catalog: list[SourceSpec] = []

    pdf_dir = Path(config.pdf_directory)
    for pdf_file in config.pdf_files:
        catalog.append(
            SourceSpec(SourceKind.PDF, pdf_file, partial(fetch_pdf, pdf_dir / pdf_file))
        )

    for article_id in config.article_ids:
        url = article_url(config.article_url_template, config.article_ids, article_id)
        catalog.append(
            SourceSpec(SourceKind.ARTICLE, article_id, partial(fetch_article, http_client, url))
        )

    for channel in config.chat_feed_channels:
        throttle = MinIntervalThrottle(config.chat_feed_page_delay)
        catalog.append(
            SourceSpec(
                SourceKind.CHAT_FEED,
                channel,
                partial(fetch_chat_feed, http_client, config.chat_feed_url, channel, throttle),
            )
        )

    logger.debug("Built source catalog with %d entries", len(catalog))
    return catalog
