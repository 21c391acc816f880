"""
Shared fixtures — in-memory SQLite database, test settings and row factories.
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from breachfeed.config import Settings
from breachfeed.database import Base
from breachfeed.models import Article, Feed, Subscription


@pytest.fixture
def settings():
    # No backoff delay and a low content threshold
    return Settings(
        database_url="sqlite:///:memory:",
        enable_full_content_fetch=False,
        content_fetch_timeout=2.0,
        content_fetch_retries=2,
        content_fetch_backoff=0.0,
        content_min_chars=50,
        feed_fetch_timeout=2.0,
        feed_interval_minutes=5,
        max_concurrent_feeds=2,
        max_concurrent_fetches=2,
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_feed(db):
    def _make(**kwargs) -> Feed:
        defaults = {"name": "test-feed", "url": "https://feeds.example.com/security.xml", "is_active": True}
        defaults.update(kwargs)
        feed = Feed(**defaults)
        db.add(feed)
        db.commit()
        return feed
    return _make


@pytest.fixture
def make_article(db):
    counter = {"n": 0}

    def _make(**kwargs) -> Article:
        counter["n"] += 1
        n = counter["n"]
        defaults = {
            "id": f"article-{n}",
            "title": "Test Article",
            "url": f"https://news.example.com/{n}",
            "guid": f"guid-{n}",
            "summary": None,
            "has_full_content": False,
            "published_at": datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
        }
        defaults.update(kwargs)
        article = Article(**defaults)
        db.add(article)
        db.commit()
        return article
    return _make


@pytest.fixture
def make_subscription(db):
    def _make(**kwargs) -> Subscription:
        defaults = {"subscriber_id": "subscriber-1", "alert_type_filter": [], "is_active": True}
        defaults.update(kwargs)
        subscription = Subscription(**defaults)
        db.add(subscription)
        db.commit()
        return subscription
    return _make
