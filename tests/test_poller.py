import asyncio
import time
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from breachfeed.exceptions import FeedFetchError, FeedParseError
from breachfeed.models import AlertType, Article, DeletedArticle, ExclusionKeyword, Feed, Severity
from breachfeed.poller import (
    FeedPoller,
    entry_to_item,
    generate_article_id,
    generate_slug,
    parse_date,
    parse_feed_document,
    strip_html,
)
from breachfeed.schemas import FeedItem
from sample_feeds import RSS


def feed_transport(content: bytes = RSS, status_code: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, content=content)
    return httpx.MockTransport(handler)


def make_item(n: int = 1, **kwargs) -> FeedItem:
    defaults = {
        "guid": f"guid-{n}",
        "url": f"https://news.example.com/item-{n}",
        "title": f"Item {n}",
        "summary": "Summary text",
        "published_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }
    defaults.update(kwargs)
    return FeedItem(**defaults)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestStripHtml:
    def test_removes_tags(self):
        assert strip_html("<p>Hello <b>world</b></p>") == "Hello world"

    def test_unescapes_entities(self):
        assert strip_html("Fish &amp; chips") == "Fish & chips"

    def test_handles_none(self):
        assert strip_html(None) == ""

    def test_collapses_whitespace(self):
        assert strip_html("<div>a</div>\n\n<div>b</div>") == "a b"


class TestParseDate:
    def test_uses_published_parsed(self):
        entry = {"published_parsed": time.strptime("2024-01-15", "%Y-%m-%d")}
        assert parse_date(entry) == datetime(2024, 1, 15, tzinfo=timezone.utc)

    def test_falls_back_to_updated_parsed(self):
        entry = {"published_parsed": None, "updated_parsed": time.strptime("2024-06-01", "%Y-%m-%d")}
        assert parse_date(entry).month == 6

    def test_falls_back_to_now(self):
        result = parse_date({})
        assert result.tzinfo == timezone.utc


class TestIdentifiers:
    def test_article_id_is_stable(self):
        assert generate_article_id("guid-1") == generate_article_id("guid-1")
        assert len(generate_article_id("guid-1")) == 16

    def test_article_id_differs_per_identifier(self):
        assert generate_article_id("guid-1") != generate_article_id("guid-2")

    def test_slug(self):
        assert generate_slug("Acme Corp: Data Breach!") == "acme-corp-data-breach"

    def test_slug_is_truncated(self):
        assert len(generate_slug("word " * 50)) <= 100


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestEntryToItem:
    def test_guid_falls_back_to_link(self):
        item = entry_to_item({"link": "https://news.example.com/a", "title": "A"})
        assert item.guid == "https://news.example.com/a"

    def test_summary_from_content_block(self):
        entry = {"link": "https://news.example.com/a", "title": "A", "content": [{"value": "<p>Body</p>"}]}
        assert entry_to_item(entry).summary == "Body"

    def test_missing_link_raises(self):
        with pytest.raises(ValueError):
            entry_to_item({"id": "x", "title": "No link"})

    def test_non_http_link_raises(self):
        with pytest.raises(ValueError):
            entry_to_item({"link": "javascript:alert(1)", "title": "Bad"})

    def test_untitled(self):
        assert entry_to_item({"link": "https://news.example.com/a"}).title == "Untitled"


class TestParseFeedDocument:
    def test_malformed_entry_is_skipped_not_fatal(self):
        items, skipped = parse_feed_document(RSS)
        assert [i.guid for i in items] == ["acme-breach-1", "bank-incident-1"]
        assert skipped == 1

    def test_html_is_stripped_from_summary(self):
        items, _ = parse_feed_document(RSS)
        assert "<" not in items[0].summary
        assert "Acme confirmed unauthorized access" in items[0].summary

    def test_published_date_parsed(self):
        items, _ = parse_feed_document(RSS)
        assert items[0].published_at == datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)

    def test_duplicate_entries_in_document_are_skipped(self):
        doc = RSS.replace(b"bank-incident-1", b"acme-breach-1")
        items, skipped = parse_feed_document(doc)
        assert len(items) == 1
        assert skipped == 2

    def test_unparseable_document_raises(self):
        with pytest.raises(FeedParseError):
            parse_feed_document(b"<html><body><p>Not a feed</p")


# ---------------------------------------------------------------------------
# Scheduling state
# ---------------------------------------------------------------------------

class TestFeedDue:
    def test_never_fetched_is_due(self):
        assert Feed(name="f", url="u").is_due(datetime.now(timezone.utc), 5)

    def test_recently_fetched_is_not_due(self):
        now = datetime.now(timezone.utc)
        feed = Feed(name="f", url="u", last_fetched_at=now - timedelta(minutes=2))
        assert not feed.is_due(now, 5)

    def test_feed_interval_overrides_default(self):
        now = datetime.now(timezone.utc)
        feed = Feed(name="f", url="u", last_fetched_at=now - timedelta(minutes=2), fetch_interval_minutes=1)
        assert feed.is_due(now, 5)

    def test_mark_fetched_never_moves_backwards(self):
        now = datetime.now(timezone.utc)
        feed = Feed(name="f", url="u", last_fetched_at=now)
        feed.mark_fetched(now - timedelta(hours=1))
        assert feed.last_fetched_at == now

    def test_due_feeds_skips_inactive(self, db, settings, make_feed):
        make_feed(name="active", url="https://a.example.com/rss")
        make_feed(name="inactive", url="https://b.example.com/rss", is_active=False)
        make_feed(
            name="fresh", url="https://c.example.com/rss",
            last_fetched_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        due = FeedPoller(settings).due_feeds(db)
        assert [f.name for f in due] == ["active"]


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------

class TestPoll:
    def test_poll_returns_items(self, settings, make_feed):
        feed = make_feed()
        poller = FeedPoller(settings, transport=feed_transport())
        items, skipped = asyncio.run(poller.poll(feed))
        assert len(items) == 2
        assert skipped == 1

    def test_http_error_raises_fetch_error(self, settings, make_feed):
        feed = make_feed()
        poller = FeedPoller(settings, transport=feed_transport(b"down", status_code=503))
        with pytest.raises(FeedFetchError):
            asyncio.run(poller.poll(feed))

    def test_network_error_raises_fetch_error(self, settings, make_feed):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        feed = make_feed()
        poller = FeedPoller(settings, transport=httpx.MockTransport(handler))
        with pytest.raises(FeedFetchError):
            asyncio.run(poller.poll(feed))

    def test_slow_feed_times_out(self, settings, make_feed):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, content=RSS)

        settings.feed_fetch_timeout = 0.05
        feed = make_feed()
        poller = FeedPoller(settings, transport=httpx.MockTransport(handler))
        with pytest.raises(FeedFetchError):
            asyncio.run(poller.poll(feed))


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

class TestIngest:
    def test_creates_unclassified_articles_in_order(self, db, settings, make_feed):
        feed = make_feed()
        created, filtered = FeedPoller(settings).ingest(feed, [make_item(1), make_item(2)], db)

        assert [a.guid for a in created] == ["guid-1", "guid-2"]
        assert filtered == 0
        for article in created:
            assert article.alert_type is None
            assert article.has_full_content is False
            assert article.id == generate_article_id(article.guid)

    def test_reingest_creates_no_duplicates(self, db, settings, make_feed):
        feed = make_feed()
        poller = FeedPoller(settings)
        poller.ingest(feed, [make_item(1)], db)
        created, _ = poller.ingest(feed, [make_item(1)], db)

        assert created == []
        assert db.query(Article).count() == 1

    def test_same_url_different_guid_is_known(self, db, settings, make_feed):
        feed = make_feed()
        poller = FeedPoller(settings)
        poller.ingest(feed, [make_item(1)], db)
        created, _ = poller.ingest(feed, [make_item(1, guid="other-guid")], db)
        assert created == []

    def test_reingest_does_not_touch_classified_article(self, db, settings, make_feed, make_article):
        feed = make_feed()
        make_article(
            guid="guid-1", url="https://news.example.com/item-1",
            alert_type=AlertType.CONFIRMED_BREACH, severity=Severity.HIGH, classification_confidence=0.9,
        )
        FeedPoller(settings).ingest(feed, [make_item(1, title="Changed title")], db)

        article = db.query(Article).filter(Article.guid == "guid-1").one()
        assert article.alert_type == AlertType.CONFIRMED_BREACH
        assert article.title == "Test Article"

    def test_tombstoned_url_is_not_reingested(self, db, settings, make_feed):
        feed = make_feed()
        db.add(DeletedArticle(url="https://news.example.com/item-1", reason="spam"))
        db.commit()
        created, _ = FeedPoller(settings).ingest(feed, [make_item(1)], db)
        assert created == []

    def test_global_exclusion_keyword_filters(self, db, settings, make_feed):
        feed = make_feed()
        db.add(ExclusionKeyword(keyword="Sponsored"))
        db.commit()
        created, filtered = FeedPoller(settings).ingest(
            feed, [make_item(1, title="Sponsored: buy our firewall"), make_item(2)], db
        )
        assert [a.guid for a in created] == ["guid-2"]
        assert filtered == 1

    def test_feed_specific_exclusion_only_applies_to_that_feed(self, db, settings, make_feed):
        feed_a = make_feed(name="a", url="https://a.example.com/rss")
        feed_b = make_feed(name="b", url="https://b.example.com/rss")
        db.add(ExclusionKeyword(keyword="webinar", feed_id=feed_a.id))
        db.commit()
        poller = FeedPoller(settings)

        created_a, _ = poller.ingest(feed_a, [make_item(1, title="Join our webinar")], db)
        created_b, _ = poller.ingest(feed_b, [make_item(2, title="Join our webinar")], db)
        assert created_a == []
        assert len(created_b) == 1

    def test_ingest_does_not_advance_feed_timestamp(self, db, settings, make_feed):
        feed = make_feed()
        FeedPoller(settings).ingest(feed, [make_item(1)], db)
        assert feed.last_fetched_at is None
