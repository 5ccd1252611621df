from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from swiss_job_alert.log import get_logger
from swiss_job_alert.pipeline import AlertPipeline

ALERTS_JOB_ID = "alerts"
CLEANUP_JOB_ID = "cleanup"

log = get_logger(__name__)


class AlertScheduler:
    """Periodic triggers for alert processing and retention cleanup."""

    def __init__(
        self,
        pipeline: AlertPipeline,
        *,
        alerts_cron: str,
        cleanup_cron: str,
        timezone: str,
        retention_days: int,
    ):
        self.pipeline = pipeline
        self.alerts_cron = alerts_cron
        self.cleanup_cron = cleanup_cron
        self.retention_days = retention_days
        self.timezone = timezone
        self._scheduler = AsyncIOScheduler(timezone=timezone)
        self._scheduler.add_job(
            self._run_alerts,
            CronTrigger.from_crontab(alerts_cron, timezone=timezone),
            id=ALERTS_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._run_cleanup,
            CronTrigger.from_crontab(cleanup_cron, timezone=timezone),
            id=CLEANUP_JOB_ID,
            max_instances=1,
            coalesce=True,
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def _run_alerts(self) -> None:
        log.info("scheduled alert processing started")
        result = await self.pipeline.process_all()
        if result.success:
            log.info("scheduled alert processing completed")
        else:
            log.error("scheduled alert processing failed: %s", result.error)

    async def _run_cleanup(self) -> None:
        result = await self.pipeline.cleanup(self.retention_days)
        if not result.success:
            log.error("scheduled cleanup failed: %s", result.error)

    def start(self) -> None:
        self._scheduler.start()
        log.info(
            "scheduler started: alerts=%r cleanup=%r timezone=%s",
            self.alerts_cron,
            self.cleanup_cron,
            self.timezone,
        )

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            log.info("scheduler stopped")

    def status(self) -> dict[str, object]:
        jobs: dict[str, str | None] = {}
        for job in self._scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs[job.id] = next_run.isoformat() if next_run else None
        return {
            "running": self._scheduler.running,
            "timezone": self.timezone,
            "alertsCron": self.alerts_cron,
            "cleanupCron": self.cleanup_cron,
            "nextRuns": jobs,
        }
