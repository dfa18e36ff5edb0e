# estatemetrics/scheduler.py
import random
import threading
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from . import config
from .region import RegionPipeline
from .utils import logger

JOB_ID = "sync_regions"


class RegionScheduler:
    """Daily region sync at `hour`, on a minute picked at random per instance."""

    def __init__(self, pipeline: RegionPipeline, hour: int = config.CRON_HOUR, minute: Optional[int] = None, rng=None):
        self.pipeline = pipeline
        self.hour = hour
        self.minute = minute if minute is not None else (rng or random).randint(0, 59)
        self.stop_event = threading.Event()
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self.run,
            CronTrigger(hour=self.hour, minute=self.minute),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def run(self):
        return self.pipeline.run_job(cancel=self.stop_event)

    def start(self) -> None:
        if self._scheduler.running:
            return
        self.stop_event.clear()
        self._scheduler.start()
        logger.info("Scheduler started (daily at %02d:%02d)", self.hour, self.minute)

    def shutdown(self, wait: bool = True) -> None:
        self.stop_event.set()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")
