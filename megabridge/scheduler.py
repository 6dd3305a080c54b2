"""APScheduler setup for recurring jobs"""

from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from megabridge.utils.logger import get_logger

logger = get_logger(__name__)


class SchedulerService:
    """Scheduler service using APScheduler"""

    def __init__(self):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False

    def initialize(self):
        """Initialize scheduler"""
        # Jobs are re-registered on every start, nothing to persist
        jobstores = {"default": MemoryJobStore()}
        executors = {"default": AsyncIOExecutor()}
        job_defaults = {
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 300,
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone="UTC",
        )
        logger.info("Scheduler initialized")

    def start(self):
        """Start scheduler"""
        if not self.scheduler:
            raise RuntimeError("Scheduler not initialized. Call initialize() first.")

        self.scheduler.start()
        self.running = True
        logger.info("Scheduler started")

    def stop(self):
        """Stop scheduler without waiting for a sweep in progress"""
        if self.scheduler and self.running:
            try:
                self.scheduler.shutdown(wait=False)
                logger.info("Scheduler stopped")
            except Exception as e:
                logger.error(f"Failed to stop scheduler: {e}")
            finally:
                self.running = False

    def add_job(self, func, trigger, job_id: Optional[str] = None, **kwargs):
        """Add a job to the scheduler"""
        if not self.scheduler:
            raise RuntimeError("Scheduler not initialized. Call initialize() first.")

        job = self.scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True, **kwargs)
        if job and job.next_run_time:
            logger.info(
                f"Job added: {job_id or func.__name__} - Next run: {job.next_run_time.strftime('%Y-%m-%d %H:%M:%S UTC')}"
            )
        else:
            logger.info(f"Job added: {job_id or func.__name__}")
        return job

    def add_interval_job(self, func, minutes: int, job_id: Optional[str] = None, **kwargs):
        """Add an interval job"""
        trigger = IntervalTrigger(minutes=minutes)
        return self.add_job(func, trigger, job_id=job_id, **kwargs)

    def remove_job(self, job_id: str):
        if not self.scheduler:
            raise RuntimeError("Scheduler not initialized. Call initialize() first.")

        try:
            self.scheduler.remove_job(job_id)
            logger.info(f"Job removed: {job_id}")
        except Exception as e:
            logger.error(f"Failed to remove job: {job_id}: {e}")

    def get_jobs(self):
        if not self.scheduler:
            return []
        return self.scheduler.get_jobs()
