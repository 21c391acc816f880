import asyncio
import logging
from typing import Dict, Optional, Set

from breachfeed.config import Settings
from breachfeed.models import Feed, utcnow
from breachfeed.pipeline import Pipeline

logger = logging.getLogger(__name__)


class FeedScheduler:
    """
    Background worker pool that keeps every active feed on its own interval.

    A fixed number of workers pull feed ids from a queue. After each cycle the
    feed is re-enqueued once its interval has elapsed, so a slow feed only
    ever delays itself. A registry refresh on every tick picks up newly
    activated feeds; deactivated feeds are dropped when next dequeued.
    """

    def __init__(self, pipeline: Pipeline, settings: Settings):
        self.pipeline = pipeline
        self.settings = settings
        self._queue: Optional[asyncio.Queue] = None
        self._scheduled: Set[int] = set()  # queued, in flight, or waiting on a timer
        self._timers: Dict[int, asyncio.TimerHandle] = {}

    async def run(self):
        """Entry point for the background task. Runs until cancelled."""
        self._queue = asyncio.Queue()
        workers = [
            asyncio.create_task(self._worker(n), name=f"feed-worker-{n}")
            for n in range(self.settings.max_concurrent_feeds)
        ]
        logger.info(
            f"FeedScheduler started — {len(workers)} workers, "
            f"registry refresh every {self.settings.scheduler_tick_seconds}s"
        )
        try:
            while True:
                self.refresh()
                # Failed classifications get another attempt each tick, off the loop thread
                await asyncio.to_thread(self.pipeline.classify_pending)
                await asyncio.sleep(self.settings.scheduler_tick_seconds)
        finally:
            for handle in self._timers.values():
                handle.cancel()
            self._timers.clear()
            self._scheduled.clear()
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info("FeedScheduler stopped")

    def refresh(self) -> int:
        """Enqueue due, active feeds that are not already scheduled. Returns the number enqueued."""
        db = self.pipeline.db_factory()
        try:
            feeds = db.query(Feed).filter(Feed.is_active.is_(True)).order_by(Feed.id).all()
            now = utcnow()
            due = [
                f.id for f in feeds
                if f.id not in self._scheduled and f.is_due(now, self.settings.feed_interval_minutes)
            ]
        finally:
            db.close()

        for feed_id in due:
            self._enqueue(feed_id)
        if due:
            logger.info(f"[scheduler] Enqueued {len(due)} feeds")
        return len(due)

    def _enqueue(self, feed_id: int) -> None:
        self._timers.pop(feed_id, None)
        self._scheduled.add(feed_id)
        self._queue.put_nowait(feed_id)

    def _interval_seconds(self, feed_id: int) -> Optional[float]:
        """The feed's polling interval, or None when it is gone or inactive."""
        db = self.pipeline.db_factory()
        try:
            feed = db.get(Feed, feed_id)
            if feed is None or not feed.is_active:
                return None
            return feed.interval(self.settings.feed_interval_minutes).total_seconds()
        finally:
            db.close()

    async def _worker(self, n: int):
        while True:
            feed_id = await self._queue.get()
            try:
                await self._cycle(feed_id)
            finally:
                self._queue.task_done()

    async def _cycle(self, feed_id: int) -> None:
        try:
            interval = self._interval_seconds(feed_id)
        except Exception as e:
            # Keep the feed scheduled; the next attempt uses the default interval
            interval = self.settings.feed_interval_minutes * 60.0
            logger.exception(f"[scheduler] Could not load feed {feed_id}, retrying in {interval:.0f}s: {e}")
            self._arm(feed_id, interval)
            return
        if interval is None:
            logger.info(f"[scheduler] Feed {feed_id} is no longer active — dropping it")
            self._scheduled.discard(feed_id)
            return

        try:
            result = await self.pipeline.poll_feed(feed_id)
            if not result.ok:
                logger.warning(f"[scheduler] Feed {feed_id} failed, retrying in {interval:.0f}s: {result.error}")
        except Exception as e:
            logger.exception(f"[scheduler] Unexpected error polling feed {feed_id}: {e}")

        self._arm(feed_id, interval)

    def _arm(self, feed_id: int, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timers[feed_id] = loop.call_later(delay, self._enqueue, feed_id)
