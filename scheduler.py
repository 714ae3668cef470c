import logging
from dataclasses import dataclass
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger

from config import Settings, get_settings
from dispatcher import Dispatcher, JobReport
from insights import build_insight_generator
from jobs import (
    JobContext,
    check_budget_alerts,
    generate_monthly_reports,
    register_events,
    trigger_recurring_transactions,
)
from notifier import build_notifier


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledJob:
    name: str
    handler: Callable[[JobContext], object]
    trigger: BaseTrigger
    misfire_grace_time: int


def _summarize(result: object) -> dict[str, object]:
    if isinstance(result, JobReport):
        return result.as_dict()
    return {"count": result}


class SchedulerManager:
    def __init__(
        self,
        ctx: Optional[JobContext] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.settings = settings
        self.ctx = ctx or JobContext(
            session_factory=None,
            dispatcher=Dispatcher(
                max_workers=settings.dispatch_workers,
                owner_concurrency=settings.owner_concurrency,
                max_attempts=settings.unit_max_attempts,
            ),
            notifier=build_notifier(settings),
            insights=build_insight_generator(settings),
            budget_alert_percent=settings.budget_alert_percent,
        )
        register_events(self.ctx)
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.jobs: dict[str, ScheduledJob] = {}
        for job in self._default_jobs(settings.timezone):
            self.register(job)

    @staticmethod
    def _default_jobs(timezone: str) -> list[ScheduledJob]:
        return [
            ScheduledJob(
                "check-budget-alerts",
                check_budget_alerts,
                CronTrigger(hour="*/6", minute=0, timezone=timezone),
                misfire_grace_time=1800,
            ),
            ScheduledJob(
                "trigger-recurring-transactions",
                trigger_recurring_transactions,
                CronTrigger(hour=0, minute=0, timezone=timezone),
                misfire_grace_time=3600,
            ),
            ScheduledJob(
                "generate-monthly-reports",
                generate_monthly_reports,
                CronTrigger(day=1, hour=0, minute=0, timezone=timezone),
                misfire_grace_time=6 * 3600,
            ),
        ]

    def register(self, job: ScheduledJob) -> None:
        self.jobs[job.name] = job
        self.scheduler.add_job(
            self.run_job,
            job.trigger,
            args=[job.name, "cron"],
            id=job.name,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=job.misfire_grace_time,
        )

    def run_job(self, name: str, source: str = "manual") -> dict[str, object]:
        job = self.jobs[name]
        logger.info(f"scheduler_run: job={name} source={source}")
        try:
            result = job.handler(self.ctx)
        except Exception:
            # The next tick retries; units already committed stay committed.
            logger.exception(f"scheduler_run_failed: job={name} source={source}")
            raise
        summary = _summarize(result)
        logger.info(f"scheduler_run_done: job={name} source={source} result={summary}")
        return summary

    def next_run_times(self) -> dict[str, object]:
        return {
            job.id: getattr(job, "next_run_time", None)
            for job in self.scheduler.get_jobs()
        }

    def start(self) -> None:
        self.run_job("trigger-recurring-transactions", "startup")
        self.scheduler.start()
        logger.info(f"Scheduler started with jobs: {', '.join(sorted(self.jobs))}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self.ctx.dispatcher.shutdown(wait=False)
