"""
Query Stats Capture Scheduler

Background jobs (APScheduler BackgroundScheduler):
- capture_<domain>: one snapshot → reset → persist cycle per reset domain
- query_stats_cleanup: retention sweep of the history table

Jobs run with max_instances=1 and coalesce=True, so a slow cycle is never
overlapped by the next tick in this process; the engine advisory lock covers
other processes.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .errors import CaptureDataLossError

logger = logging.getLogger(__name__)


class CaptureScheduler:
    """Background scheduler for periodic query stats capture"""

    def __init__(self, registry, enabled: bool = False, scheduler=None):
        """
        Args:
            registry: QueryStatsRegistry whose domains are captured
            enabled: Whether to run jobs at all (capture.enabled in settings.yaml)
            scheduler: Optional pre-built APScheduler instance
        """
        self.registry = registry
        self.enabled = enabled
        self.scheduler = None

        if self.enabled:
            self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
            logger.info("Query stats capture scheduler ENABLED")
        else:
            logger.info("Query stats capture scheduler DISABLED (set capture.enabled=true to activate)")

    def run_capture(self, domain_id: str):
        """Job body: one capture cycle. Data loss is logged loudly; the scheduler keeps running."""
        try:
            return self.registry.capture_query_stats(domain_id)
        except CaptureDataLossError as e:
            logger.error(f"❌ DATA LOSS during capture: {e}", exc_info=True)
        except Exception as e:
            logger.exception(f"❌ Capture job for '{domain_id}' crashed: {e}")
        return None

    def run_cleanup(self, retention_days: int):
        try:
            return self.registry.clean_query_stats(retention_days)
        except Exception as e:
            logger.exception(f"❌ Query stats cleanup job failed: {e}")
        return None

    def add_capture_jobs(self, interval_minutes: int):
        if not self.enabled:
            logger.debug("Scheduler disabled - capture jobs not added")
            return

        for domain_id in self.registry.domains():
            self.scheduler.add_job(
                self.run_capture,
                "interval",
                minutes=interval_minutes,
                args=[domain_id],
                id=f"capture_{domain_id}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(f"Added capture job for domain '{domain_id}': every {interval_minutes} minutes")

    def add_cleanup_job(self, interval_hours: int, retention_days: int):
        if not self.enabled:
            logger.debug("Scheduler disabled - cleanup job not added")
            return

        self.scheduler.add_job(
            self.run_cleanup,
            "interval",
            hours=interval_hours,
            args=[retention_days],
            id="query_stats_cleanup",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Added cleanup job: every {interval_hours}h, keeping {retention_days} days")

    def start(self):
        if self.enabled and self.scheduler:
            self.scheduler.start()
            logger.info("Query stats capture scheduler STARTED")
        else:
            logger.info("Scheduler not started (disabled in settings)")

    def shutdown(self):
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Query stats capture scheduler STOPPED")


def build_scheduler(registry, capture_settings) -> CaptureScheduler:
    scheduler = CaptureScheduler(registry, enabled=capture_settings.enabled)
    scheduler.add_capture_jobs(capture_settings.interval_minutes)
    scheduler.add_cleanup_job(capture_settings.cleanup_interval_hours, capture_settings.retention_days)
    return scheduler
