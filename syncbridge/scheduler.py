"""Background scheduler for periodic sync"""

import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from syncbridge.config import settings
from syncbridge.services.sync_service import SyncService, get_sync_service

logger = logging.getLogger(__name__)

TICK_JOB_ID = "scheduled_sync_tick"
PURGE_JOB_ID = "kv_purge_expired"


class SyncScheduler:
    """Scheduler for the periodic reconciliation tick"""

    def __init__(
        self,
        service_factory: Callable[[], SyncService] = get_sync_service,
        interval_minutes: Optional[int] = None,
        enabled: Optional[bool] = None,
    ):
        self.scheduler = BackgroundScheduler()
        self.service_factory = service_factory
        self.interval_minutes = interval_minutes or settings.scheduled_sync_interval_minutes
        self.enabled = settings.scheduled_sync_enabled if enabled is None else enabled

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Sync scheduler started")

        if self.enabled:
            self.schedule_tick(self.interval_minutes)
        else:
            logger.info("Scheduled sync disabled by configuration")
        self.scheduler.add_job(
            func=self._purge_job,
            trigger=IntervalTrigger(minutes=15),
            id=PURGE_JOB_ID,
            replace_existing=True,
        )

    def stop(self):
        """Stop the scheduler"""
        self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")

    def schedule_tick(self, interval_minutes: int):
        """(Re)schedule the tick job"""
        existing = self.scheduler.get_job(TICK_JOB_ID)
        if existing is not None:
            self.scheduler.remove_job(TICK_JOB_ID)

        self.scheduler.add_job(
            func=self._tick_job,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.interval_minutes = interval_minutes
        logger.info(f"Scheduled sync every {interval_minutes} minutes")

    def _tick_job(self):
        """Job function: run the scheduled sweep through the event dispatcher"""
        try:
            logger.info("Running scheduled sync tick")
            result = self.service_factory().handle_event({"eventType": "tick"})
            logger.info(f"Scheduled sync tick completed: {result.get('status')}")
        except Exception as e:
            logger.error(f"Scheduled sync tick failed: {e}")

    def _purge_job(self):
        """Drop expired flags, leases and timestamps from the SQL store"""
        try:
            kv = self.service_factory().kv
            purge = getattr(kv, "purge_expired", None)
            if purge is not None:
                removed = purge()
                if removed:
                    logger.info(f"Purged {removed} expired key(s)")
        except Exception as e:
            logger.error(f"Expired key purge failed: {e}")


# Global scheduler instance
scheduler = SyncScheduler()
