import asyncio
import logging
from datetime import timedelta
from typing import Callable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from breachfeed.classifier import ClassifierService
from breachfeed.config import Settings
from breachfeed.content import ContentFetcher
from breachfeed.dispatch import Dispatcher, LoggingDispatcher, record_dispatch, undispatched
from breachfeed.entities import load_associations, tag_article
from breachfeed.exceptions import FeedFetchError, FeedParseError
from breachfeed.matcher import DeliveryPair, SqlReferenceLookup, SubscriptionMatcher, load_active_subscriptions
from breachfeed.models import Article, Feed, utcnow
from breachfeed.poller import FeedPoller
from breachfeed.schemas import ArticleOutcome, FeedResult, PassReport

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Poller → content fetcher → classifier → entity tagger → matcher → dispatcher.

    Every unit of work (feed, article, subscription) fails on its own: errors
    are turned into result objects at the unit's boundary and never stop
    the other units in the same pass.
    """

    def __init__(
        self,
        settings: Settings,
        db_factory: Callable[[], Session],
        poller: Optional[FeedPoller] = None,
        fetcher: Optional[ContentFetcher] = None,
        classifier: Optional[ClassifierService] = None,
        dispatcher: Optional[Dispatcher] = None,
    ):
        self.settings = settings
        self.db_factory = db_factory
        self.poller = poller or FeedPoller(settings)
        self.fetcher = fetcher or ContentFetcher(settings)
        self.classifier = classifier or ClassifierService(settings.classifier_model)
        self.dispatcher = dispatcher or LoggingDispatcher()

    # ---------------------------------------------------------------------------
    # Feed cycle
    # ---------------------------------------------------------------------------

    async def poll_feed(self, feed_id: int) -> FeedResult:
        """
        Run one full cycle for a feed. The feed's timestamp is advanced only
        when its document was fetched and parsed; a failed cycle leaves it
        untouched so the feed is retried on the next pass.
        """
        db = self.db_factory()
        try:
            feed = db.get(Feed, feed_id)
            if feed is None or not feed.is_active:
                logger.warning(f"[feed {feed_id}] Unknown or inactive feed — skipping")
                return FeedResult(feed_id=feed_id, feed_name="", ok=False, error="unknown or inactive feed")

            name = feed.name
            started = utcnow()
            try:
                items, skipped = await self.poller.poll(feed)
            except (FeedFetchError, FeedParseError) as e:
                logger.error(f"[{name}] Feed cycle failed: {e}")
                return FeedResult(feed_id=feed_id, feed_name=name, ok=False, error=str(e))

            created, filtered = self.poller.ingest(feed, items, db)
            feed.mark_fetched(started)
            db.commit()

            await self.attach_content(created, db)
            outcomes = [self.process_article(article, db) for article in created]

            return FeedResult(
                feed_id=feed_id,
                feed_name=name,
                ok=True,
                items_seen=len(items) + skipped,
                new_articles=len(created),
                skipped_items=skipped + filtered,
                articles=outcomes,
            )
        finally:
            db.close()

    async def attach_content(self, articles: List[Article], db: Session) -> None:
        """Fetch full content for new articles concurrently; failures keep the summary."""
        if not articles or not self.fetcher.enabled:
            return

        urls = [article.url for article in articles]
        texts = await asyncio.gather(*(self.fetcher.fetch_text(url) for url in urls), return_exceptions=True)

        for article, text in zip(articles, texts):
            if isinstance(text, Exception):
                logger.warning(f"[{article.id}] Content fetch raised {type(text).__name__}: {text}")
                continue
            if text:
                article.set_full_content(text)
        db.commit()

    # ---------------------------------------------------------------------------
    # Per-article work
    # ---------------------------------------------------------------------------

    def process_article(self, article: Article, db: Session) -> ArticleOutcome:
        """Classify, tag, match and dispatch a single article."""
        outcome = ArticleOutcome(article_id=article.id, has_full_content=article.has_full_content)

        result = self.classifier.classify_and_save(article, db)
        if result is None:
            outcome.error = article.classification_error
            return outcome

        outcome.classified = True
        outcome.fallback = result.fallback
        outcome.alert_type = result.alert_type

        try:
            tag_article(article, db)
            matcher = SubscriptionMatcher(SqlReferenceLookup(db))
            match = matcher.match(article, load_associations(article.id, db), load_active_subscriptions(db))
            outcome.matched_subscription_ids = match.subscription_ids
            outcome.skipped_subscriptions = match.skipped
            outcome.dispatched = self.deliver(match.pairs, db)
        except Exception as e:
            db.rollback()
            logger.exception(f"[{article.id}] Matching failed: {e}")
            outcome.error = str(e)

        return outcome

    def deliver(self, pairs: List[DeliveryPair], db: Session) -> int:
        """
        Hand pairs not yet in the dispatch ledger to the dispatcher.

        Returns:
            the number of pairs dispatched by this call
        """
        pending = undispatched(pairs, db)
        if not pending:
            return 0

        try:
            record_dispatch(pending, db)
        except IntegrityError:
            # Another pass recorded (and dispatched) these pairs first
            db.rollback()
            logger.info(f"[dispatch] {len(pending)} pairs already recorded — not dispatching again")
            return 0

        try:
            self.dispatcher.dispatch(pending)
        except Exception as e:
            logger.error(f"[dispatch] Dispatcher raised {type(e).__name__}: {e}")
        return len(pending)

    # ---------------------------------------------------------------------------
    # Passes
    # ---------------------------------------------------------------------------

    def classify_pending(self, reclassify: bool = False) -> PassReport:
        """
        Retry articles left unclassified by an earlier failure, then match them.
        With reclassify=True every article is classified again.

        Unclassified articles that were never attempted belong to a feed cycle
        still in flight; they are picked up only once they are older than one
        feed interval.
        """
        db = self.db_factory()
        try:
            query = db.query(Article)
            if not reclassify:
                stale = utcnow() - timedelta(minutes=self.settings.feed_interval_minutes)
                query = query.filter(Article.alert_type.is_(None)).filter(
                    or_(Article.classification_attempts > 0, Article.created_at < stale)
                )
            articles = query.order_by(Article.created_at, Article.id).all()
            logger.info(f"[classify] {len(articles)} articles to {'re' if reclassify else ''}classify")
            return PassReport(articles=[self.process_article(article, db) for article in articles])
        finally:
            db.close()

    async def run_pass(self) -> PassReport:
        """Retry classifications left pending by earlier passes, then poll every due, active feed."""
        retried = self.classify_pending()

        db = self.db_factory()
        try:
            feed_ids = [feed.id for feed in self.poller.due_feeds(db)]
        finally:
            db.close()

        logger.info(f"[pass] {len(feed_ids)} feeds due")
        limiter = asyncio.Semaphore(self.settings.max_concurrent_feeds)

        async def bounded(feed_id: int) -> FeedResult:
            async with limiter:
                return await self.poll_feed(feed_id)

        results = await asyncio.gather(*(bounded(feed_id) for feed_id in feed_ids))
        report = PassReport(feeds=list(results), articles=retried.articles)

        logger.info(
            f"[pass] {len(report.feeds)} feeds polled ({len(report.failed_feeds)} failed), "
            f"{len(report.all_articles)} articles processed"
        )
        return report
