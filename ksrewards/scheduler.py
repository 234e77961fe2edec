"""
Periodic task scheduling

Every task runs as an APScheduler interval job wrapped in a PeriodicJob, which
skips a firing while the previous run is still busy and keeps exceptions from
reaching the scheduler thread.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import Config
from .errors import ShutdownRequested
from .service import RewardsService

logger = logging.getLogger(__name__)


class PeriodicJob:
    """A named task that never overlaps itself and never raises"""

    def __init__(self, name: str, func: Callable[[], Any]):
        self.name = name
        self.func = func
        self._lock = threading.Lock()
        self.runs = 0
        self.skipped = 0
        self.failures = 0
        self.last_result: Any = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def __call__(self) -> bool:
        if not self._lock.acquire(blocking=False):
            self.skipped += 1
            logger.info(f"Skipping {self.name}: previous run still in progress")
            return False

        try:
            logger.info(f"Running scheduled {self.name}...")
            self.last_result = self.func()
            self.runs += 1
            if self.last_result is not None:
                logger.info(f"Finished {self.name}: {self.last_result}")
            return True
        except ShutdownRequested:
            logger.info(f"{self.name} interrupted by shutdown")
            return False
        except Exception:
            self.failures += 1
            logger.exception(f"Error in scheduled {self.name}")
            return False
        finally:
            self._lock.release()


class TaskScheduler:
    def __init__(self, config: Config, service: RewardsService, scheduler: Optional[BackgroundScheduler] = None):
        self.config = config
        self.service = service
        self.scheduler = scheduler or BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers=4)},
            job_defaults={"max_instances": 1, "coalesce": True},
            timezone=timezone.utc,
        )
        self.jobs: Dict[str, PeriodicJob] = {}
        self._started = False
        self._stopped = False

    def _build_jobs(self) -> Dict[str, tuple]:
        config = self.config
        batch_size = config.batch_size
        jobs = {
            "redemption processing": (
                lambda: self.service.process_queue(batch_size),
                IntervalTrigger(minutes=config.redemption_interval_minutes),
            ),
            "gift code discovery": (
                self.service.discovery_cycle,
                IntervalTrigger(minutes=config.discovery_interval_minutes),
            ),
            "database backup": (
                self.service.create_backup,
                IntervalTrigger(hours=config.backup_interval_hours),
            ),
        }
        if config.revalidation_interval_hours > 0:
            jobs["code revalidation"] = (
                self.service.revalidate_codes,
                IntervalTrigger(hours=config.revalidation_interval_hours),
            )
        return jobs

    def start(self):
        if self._started:
            return
        self._started = True

        now = datetime.now(timezone.utc)
        for name, (func, trigger) in self._build_jobs().items():
            job = PeriodicJob(name, func)
            self.jobs[name] = job
            self.scheduler.add_job(
                job,
                trigger=trigger,
                id=name.replace(" ", "_"),
                name=name,
                max_instances=1,
                coalesce=True,
                next_run_time=now,
                replace_existing=True,
            )

        self.scheduler.start()
        logger.info("Scheduled tasks initialized")
        logger.info(f"- Redemption processing: every {self.config.redemption_interval_minutes} minutes")
        logger.info(f"- Gift code discovery: every {self.config.discovery_interval_minutes} minutes")
        logger.info(f"- Database backup: every {self.config.backup_interval_hours} hours")
        if "code revalidation" in self.jobs:
            logger.info(f"- Code revalidation: every {self.config.revalidation_interval_hours} hours")

    def stop(self):
        """Cancel all jobs and interrupt waits; safe to call more than once"""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping scheduled tasks...")
        self.service.stop()
        if self._started:
            self.scheduler.shutdown(wait=True)
        logger.info("Scheduled tasks stopped")
