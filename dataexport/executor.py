"""
Job executor: drives one triggered job cycle end to end.

Pre-flight checks and the Running transition happen synchronously so the
caller gets an execution id at once; the work itself (retries, timeout, type
dispatch) runs on an asyncio task. The outcome is handed to the job store,
which owns next-run and circuit-breaker bookkeeping.
"""
import asyncio
import json
import logging
import os
import resource
import shutil
import socket
import time
import traceback
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from core.notifications import NotificationDispatcher
from core.timeutil import utcnow
from dataexport import config
from dataexport.database import SessionLocal, sqlite_database_path
from dataexport.job_store import (
    JobAlreadyRunningError, JobDependencyError, JobDisabledError, JobNotFoundError, JobStore,
)
from dataexport.models import Job, JobStatus, JobType

logger = logging.getLogger(__name__)

_PROCESS_STARTED = time.monotonic()
SECONDS_PER_MINUTE = 60


@dataclass
class JobOutcome:
    success: bool
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def output_json(self) -> Optional[str]:
        return json.dumps(self.output, default=str) if self.output is not None else None


class JobExecutor:
    """Runs jobs with retries and a per-job timeout."""

    def __init__(self, store: JobStore, orchestrator=None, dispatcher: Optional[NotificationDispatcher] = None,
                 session_factory=None, retry_base_delay: Optional[float] = None):
        self.store = store
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher or NotificationDispatcher(max_pending=config.NOTIFICATION_QUEUE_SIZE)
        self.session_factory = session_factory or SessionLocal
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else config.JOB_RETRY_BASE_DELAY_SECONDS
        )
        self._tasks: Dict[int, asyncio.Task] = {}      # execution_id -> background task
        self._running: Dict[int, int] = {}             # job_id -> execution_id

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    def start_execution(self, job_id: int, triggered_by: str, ignore_dependencies: bool = False,
                        parameters: Optional[Dict[str, Any]] = None) -> Tuple[Job, int]:
        """
        Pre-flight checks, then mark the job Running and create its execution.
        Raises a JobRejectedError subclass when the job may not start.
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if not job.is_enabled:
            raise JobDisabledError(f"Job '{job.name}' is disabled")

        if not job.allow_concurrent:
            latest = self.store.get_latest_execution(job_id)
            if latest is not None and latest.status == JobStatus.RUNNING:
                raise JobAlreadyRunningError(f"Job '{job.name}' is already running (execution {latest.id})")

        if not ignore_dependencies:
            for dependency_id in job.dependency_ids():
                latest = self.store.get_latest_execution(dependency_id)
                if latest is None or latest.status != JobStatus.COMPLETED:
                    raise JobDependencyError(
                        f"Job '{job.name}' depends on job {dependency_id}, which has not completed"
                    )

        execution = self.store.begin_execution(job_id, triggered_by, parameters)
        return job, execution.id

    async def trigger_job(self, job_id: int, triggered_by: str = "Manual", ignore_dependencies: bool = False,
                          parameters: Optional[Dict[str, Any]] = None) -> int:
        """Start a job and return its execution id without waiting for it."""
        job, execution_id = self.start_execution(job_id, triggered_by, ignore_dependencies, parameters)
        task = asyncio.create_task(self._execute(job, execution_id, parameters))
        self._track(job.id, execution_id, task)
        return execution_id

    async def run_job(self, job_id: int, triggered_by: str = "Scheduler", ignore_dependencies: bool = False,
                      parameters: Optional[Dict[str, Any]] = None) -> int:
        """Start a job and wait for the whole cycle, retries included."""
        job, execution_id = self.start_execution(job_id, triggered_by, ignore_dependencies, parameters)
        task = asyncio.create_task(self._execute(job, execution_id, parameters))
        self._track(job.id, execution_id, task)
        await task
        return execution_id

    def _track(self, job_id: int, execution_id: int, task: asyncio.Task):
        self._tasks[execution_id] = task
        self._running[job_id] = execution_id

        def _done(_):
            self._tasks.pop(execution_id, None)
            if self._running.get(job_id) == execution_id:
                del self._running[job_id]

        task.add_done_callback(_done)

    def running_jobs(self) -> Dict[int, int]:
        return dict(self._running)

    def cancel_running(self, job_id: int) -> bool:
        execution_id = self._running.get(job_id)
        task = self._tasks.get(execution_id) if execution_id is not None else None
        if task is None or task.done():
            return False
        self.store.cancel_execution(execution_id)
        task.cancel()
        logger.info("[EXECUTOR] Cancelling job %s (execution %s)", job_id, execution_id)
        return True

    async def shutdown(self, timeout: float = 30.0):
        """Wait for in-flight executions; cancel whatever is still running after `timeout`."""
        tasks = list(self._tasks.values())
        if tasks:
            logger.info("[EXECUTOR] Waiting for %d running executions", len(tasks))
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self.dispatcher.stop()

    # ------------------------------------------------------------------
    # Execution cycle
    # ------------------------------------------------------------------

    async def _execute(self, job: Job, execution_id: int, parameters: Optional[Dict[str, Any]]):
        attempts = {"count": 0}
        started = time.monotonic()
        timeout_minutes = job.timeout_minutes or 60
        deadline = started + timeout_minutes * SECONDS_PER_MINUTE
        logger.info("[EXECUTOR] Executing job %s '%s' (execution %s, type=%s)",
                    job.id, job.name, execution_id, job.type)
        try:
            outcome = await asyncio.wait_for(
                self._attempt_loop(job, execution_id, parameters, attempts, deadline),
                timeout=timeout_minutes * SECONDS_PER_MINUTE,
            )
        except asyncio.TimeoutError:
            outcome = JobOutcome(False, error=f"Job timed out after {timeout_minutes} minutes")
            if job.type == JobType.PROFILE_EXECUTION:
                logger.warning("[EXECUTOR] Job %s timed out; its profile run keeps going in the background "
                               "until the next pipeline phase sees the deadline", job.id)
        except asyncio.CancelledError:
            self.store.cancel_execution(execution_id)
            raise
        except Exception as e:
            logger.error(f"[EXECUTOR] Job {job.id} failed after {attempts['count']} attempts: {e}")
            self.store.update_execution(
                execution_id, JobStatus.FAILED,
                error_message=str(e),
                stack_trace=traceback.format_exc(),
                attempt_number=attempts["count"],
            )
            self.dispatcher.notify_job_failure(job.id, job.name, str(e))
            return

        elapsed = time.monotonic() - started
        if outcome.success:
            self.store.update_execution(
                execution_id, JobStatus.COMPLETED,
                output_data=outcome.output_json,
                attempt_number=attempts["count"],
            )
            logger.info(f"[EXECUTOR] Job {job.id} completed in {elapsed:.1f}s after {attempts['count']} attempt(s)")
            self.dispatcher.notify_job_success(job.id, job.name, outcome.output or {})
        else:
            self.store.update_execution(
                execution_id, JobStatus.FAILED,
                output_data=outcome.output_json,
                error_message=outcome.error,
                attempt_number=attempts["count"],
            )
            logger.warning(f"[EXECUTOR] Job {job.id} failed in {elapsed:.1f}s: {outcome.error}")
            self.dispatcher.notify_job_failure(job.id, job.name, outcome.error)

    async def _attempt_loop(self, job: Job, execution_id: int, parameters, attempts: Dict[str, int],
                            deadline: Optional[float] = None) -> JobOutcome:
        """
        Up to max_retries + 1 attempts with exponential backoff between them.
        An exception on the last attempt propagates.
        """
        max_attempts = max(0, job.max_retries or 0) + 1
        outcome = JobOutcome(False, error="Job did not run")
        for attempt in range(1, max_attempts + 1):
            attempts["count"] = attempt
            if attempt > 1:
                delay = self.retry_base_delay * 2 ** (attempt - 2)
                logger.info("[EXECUTOR] Retrying job %s in %.1fs (attempt %d/%d)",
                            job.id, delay, attempt, max_attempts)
                await asyncio.sleep(delay)
            try:
                outcome = await self._dispatch(job, execution_id, parameters, deadline)
            except Exception as e:
                if attempt == max_attempts:
                    raise
                logger.warning(f"[EXECUTOR] Job {job.id} attempt {attempt} raised: {e}")
                continue
            if outcome.success:
                return outcome
            logger.warning(f"[EXECUTOR] Job {job.id} attempt {attempt} failed: {outcome.error}")
        return outcome

    async def _dispatch(self, job: Job, execution_id: int, parameters, deadline: Optional[float] = None) -> JobOutcome:
        if job.type == JobType.PROFILE_EXECUTION:
            return await self._run_profile(job, parameters, deadline)
        if job.type == JobType.HEALTH_CHECK:
            return self._health_check()
        if job.type == JobType.BACKUP_DATABASE:
            return self._backup_database()
        if job.type == JobType.CLEANUP:
            return self._cleanup()
        return JobOutcome(False, error=f"Job type {job.type} is not yet implemented")

    # ------------------------------------------------------------------
    # Job types
    # ------------------------------------------------------------------

    async def _run_profile(self, job: Job, parameters, deadline: Optional[float] = None) -> JobOutcome:
        if not job.profile_id:
            return JobOutcome(False, error="ProfileExecution job has no profile_id")
        if job.profile_type and job.profile_type.lower() != "export":
            return JobOutcome(False, error=f"Profile type '{job.profile_type}' is not supported")
        if self.orchestrator is None:
            return JobOutcome(False, error="No execution orchestrator configured")

        result = await asyncio.to_thread(
            self.orchestrator.execute_profile,
            job.profile_id,
            parameters,
            f"Job-{job.id}",
            job.id,
            job.destination_id,
            deadline=deadline,
        )
        output = {"executionId": result.execution_id, "outputPath": result.output_path}
        return JobOutcome(result.success, output, result.error)

    @staticmethod
    def _health_check() -> JobOutcome:
        usage = resource.getrusage(resource.RUSAGE_SELF)
        return JobOutcome(True, {
            "timestamp": utcnow().isoformat(),
            "server": socket.gethostname(),
            "uptimeSeconds": round(time.monotonic() - _PROCESS_STARTED, 1),
            "peakMemoryKb": usage.ru_maxrss,
            "status": "healthy",
        })

    def _backup_database(self) -> JobOutcome:
        bind = self.session_factory.kw.get("bind")
        source = sqlite_database_path(bind)
        if source is None:
            return JobOutcome(False, error="Database backup is only supported for SQLite databases")
        if not os.path.exists(source):
            return JobOutcome(False, error=f"Database file not found: {source}")

        os.makedirs(config.BACKUP_DIR, exist_ok=True)
        now = utcnow()
        target = os.path.join(config.BACKUP_DIR, f"dataexport_backup_{now:%Y%m%d_%H%M%S}.db")
        try:
            with open(source, "rb") as src, open(target, "xb") as dst:
                shutil.copyfileobj(src, dst)
        except FileExistsError:
            return JobOutcome(False, error=f"Backup file already exists: {target}")
        shutil.copystat(source, target)
        logger.info("[EXECUTOR] Database backed up to %s", target)
        return JobOutcome(True, {
            "backupPath": target,
            "fileSizeBytes": os.path.getsize(target),
            "timestamp": now.isoformat(),
        })

    def _cleanup(self) -> JobOutcome:
        now = utcnow()
        cutoff = now - timedelta(days=config.CLEANUP_RETENTION_DAYS)
        deleted = self.store.purge_history(cutoff)
        logger.info("[EXECUTOR] Cleanup deleted %d execution records older than %s", deleted, cutoff.date())
        return JobOutcome(True, {
            "deletedRecords": deleted,
            "cutoffDate": cutoff.isoformat(),
            "timestamp": now.isoformat(),
        })
