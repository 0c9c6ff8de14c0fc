"""A polling worker that runs jobs from one queue."""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from kassi import jobs
from kassi.database import Database
from kassi.models import Job

logger = logging.getLogger(__name__)


class JobHandler(abc.ABC):
    """Does the work of one job; raising an exception marks the attempt failed."""

    @abc.abstractmethod
    async def handle(self, job: Job) -> None:
        """Process a claimed job."""


@dataclass
class WorkerConfig:
    """Which queue to serve and how often to poll and back off."""

    queue: str
    poll_interval: timedelta = field(default_factory=lambda: timedelta(seconds=5))
    base_backoff: timedelta = field(default_factory=lambda: timedelta(seconds=5))


def retry_delay(base_backoff: timedelta, attempts: int) -> timedelta:
    """Delay before the next attempt: whole seconds of base, doubled per attempt."""
    base_secs = int(base_backoff.total_seconds())
    return timedelta(seconds=base_secs * 2 ** max(attempts - 1, 0))


class Worker:
    """Recovers stale jobs, then polls its queue until cancelled."""

    def __init__(self, pool: Database, handler: JobHandler, config: WorkerConfig) -> None:
        self.pool = pool
        self.handler = handler
        self.config = config
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        """Ask the worker to stop after the job it is running, if any."""
        self._cancelled.set()

    async def run(self) -> None:
        """Serve the queue until cancelled; storage failures are raised."""
        queue = self.config.queue
        recovered = await asyncio.to_thread(jobs.recover_stale, self.pool, queue)
        if recovered > 0:
            logger.info("recovered %d stale running jobs on queue %s", recovered, queue)
        logger.info("worker started on queue %s", queue)

        while not self._cancelled.is_set():
            job = await asyncio.to_thread(jobs.poll, self.pool, queue)
            if job is not None:
                await self._process(job)
                continue
            try:
                await asyncio.wait_for(
                    self._cancelled.wait(),
                    timeout=self.config.poll_interval.total_seconds(),
                )
            except asyncio.TimeoutError:
                pass

        logger.info("worker on queue %s shutting down", queue)

    async def _process(self, job: Job) -> None:
        logger.info(
            "processing job %d on queue %s, attempt %d",
            job.id,
            self.config.queue,
            job.attempts,
        )
        try:
            await self.handler.handle(job)
        except Exception as exc:
            error_msg = str(exc)
            if job.attempts >= job.max_attempts:
                await asyncio.to_thread(jobs.dead_letter, self.pool, job.id, error_msg)
                logger.warning("job %d moved to dead letter: %s", job.id, error_msg)
            else:
                retry_at = datetime.now(timezone.utc) + retry_delay(
                    self.config.base_backoff, job.attempts
                )
                await asyncio.to_thread(
                    jobs.fail, self.pool, job.id, error_msg, retry_at
                )
                logger.warning(
                    "job %d failed on attempt %d, retry at %s: %s",
                    job.id,
                    job.attempts,
                    retry_at.isoformat(),
                    error_msg,
                )
        else:
            await asyncio.to_thread(jobs.complete, self.pool, job.id)
            logger.info("job %d completed", job.id)