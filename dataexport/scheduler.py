"""
Scheduler service loop: polls the job store for due jobs, feeds the job
queue and executes dequeued jobs under the queue's concurrency limit.
Uses APScheduler for the periodic poll and circuit-breaker sweep.
"""
import asyncio
import logging
from datetime import timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.job_queue import JobQueue
from core.notifications import NotificationDispatcher
from core.timeutil import utcnow
from dataexport import config
from dataexport.executor import JobExecutor
from dataexport.job_store import JobRejectedError, JobStore
from dataexport.orchestrator import ExecutionOrchestrator

logger = logging.getLogger(__name__)


class ExportScheduler:
    """Owns the poll loop, the job queue and the executor for one process."""

    def __init__(self, store: Optional[JobStore] = None, executor: Optional[JobExecutor] = None,
                 queue: Optional[JobQueue] = None, dispatcher: Optional[NotificationDispatcher] = None,
                 check_interval_seconds: Optional[int] = None, startup_delay_seconds: Optional[int] = None):
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.store = store if store is not None else JobStore()
        self.queue = queue if queue is not None else JobQueue(config.MAX_CONCURRENT_JOBS)
        self.dispatcher = (
            dispatcher if dispatcher is not None else NotificationDispatcher(max_pending=config.NOTIFICATION_QUEUE_SIZE)
        )
        if executor is None:
            executor = JobExecutor(
                self.store,
                ExecutionOrchestrator(session_factory=self.store.session_factory, notifier=self.dispatcher),
                self.dispatcher,
                session_factory=self.store.session_factory,
            )
        self.executor = executor
        self.check_interval_seconds = (
            check_interval_seconds if check_interval_seconds is not None else config.CHECK_INTERVAL_SECONDS
        )
        self.startup_delay_seconds = (
            startup_delay_seconds if startup_delay_seconds is not None else config.STARTUP_DELAY_SECONDS
        )
        self._stopping: Optional[asyncio.Event] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    def start(self):
        """Recover from the previous run, then start polling and consuming. Needs a running loop."""
        self._stopping = asyncio.Event()
        self.store.recover_stuck_executions()
        fixed = self.store.fix_corrupted_next_run_times()
        if fixed:
            logger.warning("[SCHEDULER] Corrected %d jobs with past or missing next run times", fixed)

        first_poll = utcnow() + timedelta(seconds=self.startup_delay_seconds)
        self.scheduler.add_job(
            self.poll_due_jobs,
            trigger="interval",
            seconds=self.check_interval_seconds,
            id="poll_due_jobs",
            name="Poll due jobs",
            next_run_time=first_poll,
            replace_existing=True,
            misfire_grace_time=self.check_interval_seconds,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self.sweep_circuit_breakers,
            trigger="interval",
            seconds=config.CIRCUIT_BREAKER_SWEEP_SECONDS,
            id="circuit_breaker_sweep",
            name="Circuit breaker auto-resume",
            replace_existing=True,
            misfire_grace_time=60,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        self.dispatcher.start()

        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self._consume())
        logger.info(
            "[SCHEDULER] Started (interval=%ss, max_concurrent=%s, first poll at %s)",
            self.check_interval_seconds, self.queue.max_concurrent_jobs, first_poll.isoformat(),
        )

    async def shutdown(self):
        """Stop polling, drop queued jobs and let running executions finish."""
        if self._stopping is not None:
            self._stopping.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.queue.clear()
        if self._consumer_task and not self._consumer_task.done():
            self._consumer_task.cancel()
            await asyncio.gather(self._consumer_task, return_exceptions=True)
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        await self.executor.shutdown()
        logger.info("[SCHEDULER] Shutdown complete")

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------

    async def poll_due_jobs(self) -> int:
        """APScheduler callback: enqueue every due job. Returns how many were queued."""
        try:
            due = self.store.get_due_jobs()
        except Exception as e:
            logger.error(f"[SCHEDULER] Failed to load due jobs: {e}")
            return 0

        queued = sum(1 for job in due if self.queue.enqueue(job))
        if due:
            logger.info("[SCHEDULER] %d due jobs, %d newly queued (depth=%d)", len(due), queued, len(self.queue))
        return queued

    async def sweep_circuit_breakers(self) -> int:
        try:
            resumed = self.store.re_enable_circuit_breaker_jobs()
        except Exception as e:
            logger.error(f"[SCHEDULER] Circuit breaker sweep failed: {e}")
            return 0
        if resumed:
            logger.info("[SCHEDULER] Auto-resumed %d circuit breaker jobs", resumed)
        return resumed

    async def _consume(self):
        """Dequeue jobs as slots free up; each runs on its own task."""
        logger.info("[SCHEDULER] Queue consumer started")
        while not self._stopping.is_set():
            job = await self.queue.dequeue(self._stopping)
            if job is None:
                continue
            task = asyncio.create_task(self._run_dequeued(job))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        logger.info("[SCHEDULER] Queue consumer stopped")

    async def _run_dequeued(self, job):
        try:
            await self.executor.run_job(job.id, triggered_by="Scheduler")
        except JobRejectedError as e:
            logger.info(f"[SCHEDULER] Skipped job {job.id}: {e}")
        except Exception as e:
            logger.error(f"[SCHEDULER] Job {job.id} crashed the worker: {e}")
        finally:
            self.queue.release_slot()

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    async def trigger_job(self, job_id: int, ignore_dependencies: bool = False,
                          parameters: Optional[Dict[str, Any]] = None, triggered_by: str = "Manual") -> int:
        """Run a job now, outside the queue. Returns the execution id."""
        self.queue.remove(job_id)
        return await self.executor.trigger_job(job_id, triggered_by, ignore_dependencies, parameters)

    def forget_job(self, job_id: int):
        """Drop a job from the queue after it was disabled or deleted."""
        self.queue.remove(job_id)

    def get_queue_status(self) -> dict:
        """Queue runtime status for diagnostics."""
        return {
            **self.queue.metrics(),
            "running_jobs": [
                {"job_id": job_id, "execution_id": execution_id}
                for job_id, execution_id in self.executor.running_jobs().items()
            ],
            "consumer_alive": bool(self._consumer_task and not self._consumer_task.done()),
            "notifications": self.dispatcher.snapshot(),
        }

    def get_next_runs(self) -> List[dict]:
        """Upcoming runs of enabled jobs, soonest first."""
        jobs = [job for job in self.store.list_jobs() if job.is_enabled and job.next_run_time]
        jobs.sort(key=lambda job: job.next_run_time)
        return [
            {"job_id": job.id, "name": job.name, "next_run": job.next_run_time.isoformat()}
            for job in jobs
        ]


# Global instance
scheduler = ExportScheduler()
