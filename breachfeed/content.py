"""Full-content fetcher.

Retrieves an article's source page and extracts the primary text.
Failures never propagate: the article simply keeps its summary.
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import urlparse

import httpx
import trafilatura
from lxml import html as lxml_html
from readability import Document

from breachfeed.config import Settings
from breachfeed.exceptions import ContentFetchError

logger = logging.getLogger(__name__)

# Sites that block scrapers outright
BLOCKED_DOMAINS = ["twitter.com", "x.com", "facebook.com", "linkedin.com", "instagram.com"]

# Statuses that will not change on retry
NO_RETRY_STATUSES = {403, 404, 410, 451}

ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


def should_fetch_url(url: str) -> bool:
    """Skip malformed URLs and domains known to block scrapers."""
    hostname = urlparse(url).hostname
    if not hostname:
        return False
    return not any(hostname == domain or hostname.endswith("." + domain) for domain in BLOCKED_DOMAINS)


def extract_with_trafilatura(html: str) -> Optional[str]:
    return trafilatura.extract(html)


def extract_with_readability(html: str) -> Optional[str]:
    doc = Document(html)
    tree = lxml_html.fromstring(doc.summary())
    text = tree.text_content()

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return "\n".join(lines) if lines else None


def extract_text(html: str) -> Optional[str]:
    """
    Extract the article body from an HTML page.

    Order:
    1. trafilatura
    2. readability-lxml

    If both fail -> returns None.
    """
    try:
        text = extract_with_trafilatura(html)
        if text:
            return text
    except Exception as e:
        logger.warning(f"trafilatura failed: {e}")

    try:
        text = extract_with_readability(html)
        if text:
            return text
    except Exception as e:
        logger.warning(f"readability failed: {e}")

    return None


class ContentFetcher:
    """
    Fetches full article text, bounded by a per-attempt timeout, a fixed retry
    budget with exponential backoff, and a shared concurrency limit.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport  # injected in tests
        self._semaphore = None
        self._semaphore_loop = None

    def _limiter(self) -> asyncio.Semaphore:
        # One semaphore per event loop; the app and the tests may run several loops over time
        loop = asyncio.get_running_loop()
        if self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_fetches)
            self._semaphore_loop = loop
        return self._semaphore

    @property
    def enabled(self) -> bool:
        return self.settings.enable_full_content_fetch

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.settings.content_fetch_timeout,
            headers={"User-Agent": self.settings.user_agent, "Accept": ACCEPT_HEADER},
            transport=self._transport,
        )

    async def _backoff(self, attempt: int) -> None:
        await asyncio.sleep(self.settings.content_fetch_backoff * (2 ** attempt))

    async def _get_html(self, client: httpx.AsyncClient, url: str) -> Optional[str]:
        """
        One attempt.

        Returns:
            the page HTML, or None when retrying would not help

        Raises:
            ContentFetchError: a retryable failure (timeout, network, 5xx, 429)
        """
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise ContentFetchError(f"{type(e).__name__}: {e}") from e

        if response.status_code in NO_RETRY_STATUSES:
            logger.warning(f"Access refused for {url} (HTTP {response.status_code}) — skipping")
            return None
        if response.status_code == 429 or response.status_code >= 500:
            raise ContentFetchError(f"HTTP {response.status_code}")
        if response.status_code >= 400:
            logger.warning(f"Unexpected HTTP {response.status_code} for {url} — skipping")
            return None
        return response.text

    async def fetch_text(self, url: str) -> Optional[str]:
        """
        Fetch and extract the primary text of a page.

        Returns:
            extracted text of at least content_min_chars characters, or None
            when the flag is off, the URL is skipped, retries are exhausted,
            or the extracted text is too short
        """
        if not self.enabled:
            return None
        if not should_fetch_url(url):
            logger.info(f"Skipping content fetch for blocked or malformed URL: {url}")
            return None

        async with self._limiter():
            html = await self._fetch_with_retries(url)

        if not html:
            return None

        text = extract_text(html)
        if not text or len(text) < self.settings.content_min_chars:
            logger.info(f"Insufficient content extracted from {url} ({len(text or '')} chars)")
            return None

        logger.info(f"Extracted {len(text)} characters of full content from {url}")
        return text

    async def _fetch_with_retries(self, url: str) -> Optional[str]:
        attempts = self.settings.content_fetch_retries + 1
        async with self._client() as client:
            for attempt in range(attempts):
                try:
                    # wait_for also bounds slow bodies that trickle in under the read timeout
                    return await asyncio.wait_for(
                        self._get_html(client, url), timeout=self.settings.content_fetch_timeout
                    )
                except (ContentFetchError, asyncio.TimeoutError) as e:
                    reason = str(e) or "timed out"
                    if attempt + 1 >= attempts:
                        logger.warning(f"Giving up on {url} after {attempts} attempts: {reason}")
                        return None
                    logger.info(f"Content fetch attempt {attempt + 1} for {url} failed ({reason}), retrying")
                    await self._backoff(attempt)
        return None
