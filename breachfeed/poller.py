import asyncio
import hashlib
import html
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

import feedparser
import httpx
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from breachfeed.config import Settings
from breachfeed.exceptions import FeedFetchError, FeedParseError
from breachfeed.models import Article, DeletedArticle, ExclusionKeyword, Feed, utcnow
from breachfeed.schemas import FeedItem

logger = logging.getLogger(__name__)

FEED_ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def strip_html(text: Optional[str]) -> str:
    """Remove HTML tags and entities from a string, returning clean plain text."""
    text = re.sub(r"<[^>]+>", " ", text or "")
    return re.sub(r"\s+", " ", html.unescape(text)).strip()


def parse_date(entry) -> datetime:
    """
    Extract a UTC datetime from a feedparser entry.
    Falls back to the current time if no date is found.
    """
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if parsed:
        return datetime(*parsed[:6], tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def generate_slug(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:100]


def generate_article_id(identifier: str) -> str:
    """Generate a stable article ID from the feed GUID (or URL)."""
    return hashlib.sha256(identifier.encode()).hexdigest()[:16]


def entry_to_item(entry) -> FeedItem:
    """
    Normalise one feedparser entry.

    Raises:
        ValueError: the entry has no usable link (pydantic's ValidationError is a ValueError)
    """
    link = (entry.get("link") or "").strip()
    if not link:
        raise ValueError("entry has no link")

    # Body may be in 'summary' or nested inside 'content'
    raw_summary = entry.get("summary") or entry.get("description")
    if not raw_summary and entry.get("content"):
        raw_summary = entry["content"][0].get("value")

    return FeedItem(
        guid=(entry.get("id") or link).strip(),
        url=link,
        title=strip_html(entry.get("title")) or "Untitled",
        summary=strip_html(raw_summary) or None,
        published_at=parse_date(entry),
    )


def parse_feed_document(content: bytes, feed_name: str = "feed") -> tuple[List[FeedItem], int]:
    """
    Parse a syndication document into candidate items, in document order.

    Returns:
        items: well-formed, de-duplicated candidates
        skipped: number of malformed or repeated entries

    Raises:
        FeedParseError: the document is not a usable feed
    """
    parsed = feedparser.parse(content)
    if parsed.bozo and not parsed.entries:
        raise FeedParseError(f"unparseable feed document: {parsed.get('bozo_exception')}")

    items: List[FeedItem] = []
    seen = set()
    skipped = 0
    for entry in parsed.entries:
        try:
            item = entry_to_item(entry)
        except (ValueError, TypeError, AttributeError, KeyError, IndexError) as e:
            logger.warning(f"[{feed_name}] Skipping malformed entry: {e}")
            skipped += 1
            continue

        if item.guid in seen or item.url in seen:
            skipped += 1
            continue
        seen.update((item.guid, item.url))
        items.append(item)

    return items, skipped


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------

class FeedPoller:
    """Fetches feed documents and turns unseen items into unclassified articles."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport  # injected in tests

    def due_feeds(self, db: Session, now: Optional[datetime] = None) -> List[Feed]:
        """Active feeds whose interval has elapsed since their last successful fetch."""
        now = now or utcnow()
        feeds = db.query(Feed).filter(Feed.is_active.is_(True)).order_by(Feed.id).all()
        return [f for f in feeds if f.is_due(now, self.settings.feed_interval_minutes)]

    async def _download(self, url: str) -> bytes:
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.settings.feed_fetch_timeout,
            headers={"User-Agent": self.settings.user_agent, "Accept": FEED_ACCEPT_HEADER},
            transport=self._transport,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content

    async def fetch_document(self, feed: Feed) -> bytes:
        """
        Download a feed document within the feed timeout.

        Raises:
            FeedFetchError: network error, HTTP error status, or timeout
        """
        try:
            return await asyncio.wait_for(self._download(feed.url), timeout=self.settings.feed_fetch_timeout)
        except asyncio.TimeoutError as e:
            raise FeedFetchError(f"timed out after {self.settings.feed_fetch_timeout}s") from e
        except httpx.HTTPError as e:
            raise FeedFetchError(f"{type(e).__name__}: {e}") from e

    async def poll(self, feed: Feed) -> tuple[List[FeedItem], int]:
        """Fetch and parse one feed. Raises FeedFetchError / FeedParseError."""
        logger.info(f"[{feed.name}] Fetching {feed.url}")
        content = await self.fetch_document(feed)
        items, skipped = parse_feed_document(content, feed.name)
        logger.info(f"[{feed.name}] Parsed {len(items)} items ({skipped} skipped)")
        return items, skipped

    def _exclusion_terms(self, feed: Feed, db: Session) -> List[str]:
        rows = (
            db.query(ExclusionKeyword)
            .filter(ExclusionKeyword.is_active.is_(True))
            .filter(or_(ExclusionKeyword.feed_id.is_(None), ExclusionKeyword.feed_id == feed.id))
            .all()
        )
        return [row.keyword.lower() for row in rows if row.keyword]

    def _is_known(self, item: FeedItem, db: Session) -> bool:
        existing = db.query(Article.id).filter(or_(Article.guid == item.guid, Article.url == item.url)).first()
        if existing:
            return True
        deleted = (
            db.query(DeletedArticle.id)
            .filter(or_(DeletedArticle.url == item.url, DeletedArticle.guid == item.guid))
            .first()
        )
        if deleted:
            logger.info(f"Skipping previously deleted article: {item.url}")
            return True
        return False

    def ingest(self, feed: Feed, items: List[FeedItem], db: Session) -> tuple[List[Article], int]:
        """
        Create unclassified articles for items not already known, in document order.
        Known items are left untouched so an existing classification is never overwritten.

        Returns:
            new articles, and the number of items filtered by exclusion keywords
        """
        exclude_terms = self._exclusion_terms(feed, db)
        created: List[Article] = []
        filtered = 0

        for item in items:
            text = f"{item.title} {item.summary or ''}".lower()
            excluded = next((term for term in exclude_terms if term in text), None)
            if excluded:
                logger.info(f"[{feed.name}] Filtered '{item.title[:60]}' — contains excluded keyword '{excluded}'")
                filtered += 1
                continue

            if self._is_known(item, db):
                continue

            article = Article(
                id=generate_article_id(item.guid),
                feed_id=feed.id,
                title=item.title,
                url=item.url,
                guid=item.guid,
                slug=generate_slug(item.title),
                summary=item.summary,
                has_full_content=False,
                published_at=item.published_at,
            )
            db.add(article)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent cycle ingested the same identifier first
                db.rollback()
                logger.info(f"[{feed.name}] Article already ingested: {item.url}")
                continue
            created.append(article)

        logger.info(f"[{feed.name}] {len(created)} new articles, {filtered} filtered by keywords")
        return created, filtered
