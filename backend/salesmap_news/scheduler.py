from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from salesmap_news.config import Settings
from salesmap_news.engine import NewsJobEngine
from salesmap_news.schemas import NewsResponse

logger = logging.getLogger(__name__)


class NewsRefreshScheduler:
    """Drives one refresh step per interval for deployments with a long-lived process."""

    def __init__(self, settings: Settings, engine_factory: Callable[[], NewsJobEngine]):
        self.settings = settings
        self.engine_factory = engine_factory
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._lock = threading.Lock()

    def start(self) -> None:
        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled by configuration")
            return

        if self._scheduler.running:
            return

        self._scheduler.add_job(
            self._run_job,
            trigger=IntervalTrigger(seconds=self.settings.refresh_interval_seconds),
            id="news_refresh_step",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            jitter=10,
        )
        self._scheduler.start()
        logger.info("News refresh scheduler started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("News refresh scheduler stopped")

    def run_once(self) -> NewsResponse | None:
        if not self._lock.acquire(blocking=False):
            return None
        try:
            return self.engine_factory().fetch_news(force_refresh=True)
        finally:
            self._lock.release()

    def _run_job(self) -> None:
        try:
            result = self.run_once()
            if result is None:
                logger.info("News refresh step skipped because a step is already in progress")
                return

            logger.info(
                "News refresh step complete",
                extra={
                    "status": result.status,
                    "items": len(result.items),
                    "percent_complete": result.job.percent_complete if result.job else None,
                },
            )
        except Exception:
            logger.exception("News refresh step failed with unhandled exception")
