"""Background refresh of stale collection CMVs and watchlist prices."""

import os
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv

from src.api.v1.deps import get_listing_source
from src.db.collection import CollectionRepository
from src.db.watchlist import WatchlistRepository
from src.handlers.cmv_refresh import refresh_stale_cmvs
from src.handlers.comps_search import ListingSource
from src.handlers.watchlist_refresh import refresh_watchlist_prices
from src.utils.logger import scheduler_logger

load_dotenv()

CMV_REFRESH_INTERVAL_MINUTES = int(os.environ.get("CMV_REFRESH_INTERVAL_MINUTES", "30"))
CMV_REFRESH_BATCH = int(os.environ.get("CMV_REFRESH_BATCH", "25"))
WATCHLIST_REFRESH_INTERVAL_MINUTES = int(os.environ.get("WATCHLIST_REFRESH_INTERVAL_MINUTES", "60"))
WATCHLIST_REFRESH_BATCH = int(os.environ.get("WATCHLIST_REFRESH_BATCH", "50"))


# ==============================================================================
# SCHEDULER CLASS
# ==============================================================================


class CmvRefreshScheduler:
    """
    Periodically recomputes CMVs that are stale, failed past their cooldown, or
    stuck pending, and reprices watchlist items not checked in the last day.
    """

    def __init__(
        self,
        repo: Optional[CollectionRepository] = None,
        source: Optional[ListingSource] = None,
        interval_minutes: int = CMV_REFRESH_INTERVAL_MINUTES,
        batch_size: int = CMV_REFRESH_BATCH,
        watchlist_repo: Optional[WatchlistRepository] = None,
        watchlist_interval_minutes: int = WATCHLIST_REFRESH_INTERVAL_MINUTES,
        watchlist_batch_size: int = WATCHLIST_REFRESH_BATCH,
    ):
        self.scheduler = AsyncIOScheduler()
        self.is_running = False
        self.is_watchlist_running = False
        self.repo = repo
        self.source = source
        self.interval_minutes = interval_minutes
        self.batch_size = batch_size
        self.watchlist_repo = watchlist_repo
        self.watchlist_interval_minutes = watchlist_interval_minutes
        self.watchlist_batch_size = watchlist_batch_size

    async def run_refresh(self):
        """One refresh pass; overlapping runs on this instance are skipped."""
        if self.is_running:
            scheduler_logger.warning("CMV refresh already running, skipping execution")
            return None

        self.is_running = True
        try:
            return await refresh_stale_cmvs(
                self.repo or CollectionRepository(),
                self.source or get_listing_source(),
                batch_size=self.batch_size,
            )
        except Exception as e:
            scheduler_logger.exception(f"💥 CMV refresh pass failed: {e}")
            return None
        finally:
            self.is_running = False

    async def run_watchlist_refresh(self):
        """One watchlist repricing pass; overlapping runs are skipped."""
        if self.is_watchlist_running:
            scheduler_logger.warning("Watchlist price refresh already running, skipping execution")
            return None

        self.is_watchlist_running = True
        try:
            return await refresh_watchlist_prices(
                self.watchlist_repo or WatchlistRepository(),
                self.source or get_listing_source(),
                batch_size=self.watchlist_batch_size,
            )
        except Exception as e:
            scheduler_logger.exception(f"💥 Watchlist price refresh failed: {e}")
            return None
        finally:
            self.is_watchlist_running = False

    def start(self):
        self.scheduler.add_job(
            self.run_refresh,
            IntervalTrigger(minutes=self.interval_minutes),
            id="cmv_refresh",
            name="Stale CMV refresh",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self.run_watchlist_refresh,
            IntervalTrigger(minutes=self.watchlist_interval_minutes),
            id="watchlist_price_refresh",
            name="Watchlist price refresh",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        scheduler_logger.info(
            f"📅 CMV refresh scheduler started - every {self.interval_minutes} min, batch {self.batch_size}"
        )
        scheduler_logger.info(
            f"📅 Watchlist price refresh every {self.watchlist_interval_minutes} min, "
            f"batch {self.watchlist_batch_size}"
        )

    def stop(self):
        """Stop the scheduler cleanly."""
        if self.scheduler.running:
            self.scheduler.shutdown()
            scheduler_logger.info("⏹️  CMV refresh scheduler stopped")


# Global scheduler instance
cmv_scheduler = CmvRefreshScheduler()


def start_cmv_refresh():
    cmv_scheduler.start()


def stop_cmv_refresh():
    cmv_scheduler.stop()
