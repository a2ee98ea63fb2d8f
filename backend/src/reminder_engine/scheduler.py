from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import ConfigurationError, Settings, resolve_timezone
from .orchestrator import AutomationAlreadyRunningError, AutomationOrchestrator

logger = logging.getLogger(__name__)

AUTOMATION_JOB_ID = "hourly_automation_run"


def run_scheduled_automation(orchestrator: AutomationOrchestrator) -> None:
    """Job body; a rejected or misconfigured run is logged, never raised into the scheduler."""
    try:
        orchestrator.run(trigger="schedule")
    except AutomationAlreadyRunningError:
        logger.info("scheduled automation skipped: a run is already in progress")
    except ConfigurationError as exc:
        logger.error("scheduled automation blocked by configuration: %s", exc)


class AutomationScheduler:
    def __init__(self, orchestrator: AutomationOrchestrator, settings: Settings) -> None:
        self._orchestrator = orchestrator
        self._settings = settings
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if not self._settings.scheduler_enabled:
            logger.info("automation scheduler disabled (SCHEDULER_ENABLED=false)")
            return
        if self._scheduler is not None:
            logger.info("automation scheduler already running, skipping start")
            return

        try:
            timezone = resolve_timezone(self._settings.scheduler_timezone)
        except ConfigurationError as exc:
            logger.error("automation scheduler not started: %s", exc)
            return

        scheduler = BackgroundScheduler(timezone=timezone)
        scheduler.add_job(
            run_scheduled_automation,
            trigger=CronTrigger(minute=0, timezone=timezone),
            args=[self._orchestrator],
            id=AUTOMATION_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("automation scheduler started: hourly at minute 0 (%s)", self._settings.scheduler_timezone)

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("automation scheduler stopped")
