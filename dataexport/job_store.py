"""
Job store: persistence, status transitions and circuit-breaker bookkeeping
for jobs and their execution history.

Every mutation of a single job's schedule or failure state runs under that
job's lock from the sharded lock table and in its own short-lived session.
"""
import json
import logging
import socket
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_

from core.locks import ShardedLockTable
from core.timeutil import ensure_utc, utcnow
from dataexport import config
from dataexport.database import SessionLocal
from dataexport.models import (
    CIRCUIT_BREAKER_TAG, ExecutionStatus, Job, JobExecution, JobStatus, JobType,
    Profile, ProfileExecution, ProfileExecutionSplit, ScheduleType,
)
from dataexport.schedule import compute_next_run, cron_trigger

logger = logging.getLogger(__name__)

STALE_DUE_AFTER = timedelta(days=7)
SUCCESS_SAFETY_BUFFER = timedelta(minutes=1)
SUCCESS_FALLBACK = timedelta(hours=1)
FAILURE_FALLBACK = timedelta(minutes=5)
MAX_BACKOFF_MINUTES = 60
DUE_STATUSES = (JobStatus.IDLE, JobStatus.SCHEDULED, JobStatus.FAILED)

# Fields a caller may set through create_job/update_job
JOB_FIELDS = (
    "name", "description", "type", "profile_id", "profile_type", "destination_id", "custom_action",
    "schedule_type", "cron_expression", "interval_minutes", "start_date", "end_date",
    "start_time", "end_time", "week_days", "month_day", "max_retries", "timeout_minutes",
    "priority", "allow_concurrent", "depends_on_job_ids", "auto_pause_enabled", "is_enabled", "tags",
)
JOB_TYPES = (JobType.PROFILE_EXECUTION, JobType.HEALTH_CHECK, JobType.BACKUP_DATABASE,
             JobType.CLEANUP, JobType.CUSTOM)


class JobRejectedError(Exception):
    """A trigger was refused before any work started."""


class JobNotFoundError(JobRejectedError):
    pass


class JobDisabledError(JobRejectedError):
    pass


class JobAlreadyRunningError(JobRejectedError):
    pass


class JobDependencyError(JobRejectedError):
    pass


class JobValidationError(ValueError):
    """Job definition is not acceptable."""


class JobStore:
    """Authoritative owner of job status, next run time and failure counters."""

    def __init__(self, session_factory=None, lock_table: Optional[ShardedLockTable] = None,
                 circuit_breaker_threshold: Optional[int] = None,
                 auto_resume: Optional[bool] = None,
                 cooldown_hours: Optional[int] = None):
        self.session_factory = session_factory or SessionLocal
        self.locks = lock_table or ShardedLockTable(config.JOB_LOCK_SHARDS)
        self.circuit_breaker_threshold = (
            circuit_breaker_threshold if circuit_breaker_threshold is not None
            else config.CIRCUIT_BREAKER_THRESHOLD
        )
        self.auto_resume = auto_resume if auto_resume is not None else config.CIRCUIT_BREAKER_AUTO_RESUME
        self.cooldown_hours = cooldown_hours if cooldown_hours is not None else config.CIRCUIT_BREAKER_COOLDOWN_HOURS
        if not 1 <= self.circuit_breaker_threshold <= 100:
            raise ValueError("circuit_breaker_threshold must be between 1 and 100")
        if not 1 <= self.cooldown_hours <= 168:
            raise ValueError("cooldown_hours must be between 1 and 168")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mutate(self, job_id: int, mutate: Callable[[Any, Job], Any]) -> Optional[Job]:
        """Load one job under its lock, apply `mutate`, commit. None if missing."""
        with self.locks.lock_for(job_id):
            session = self.session_factory()
            try:
                job = session.get(Job, job_id)
                if job is None:
                    return None
                mutate(session, job)
                session.commit()
                return job
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @staticmethod
    def _schedule_exhausted(job: Job, now: datetime) -> bool:
        end_date = ensure_utc(job.end_date)
        return not job.is_enabled or (end_date is not None and end_date < now)

    def _validate(self, session, job: Job):
        if not job.name or not job.name.strip():
            raise JobValidationError("Job name is required")
        if job.type not in JOB_TYPES:
            raise JobValidationError(f"Unknown job type '{job.type}'")
        if job.schedule_type not in ScheduleType.ALL:
            raise JobValidationError(f"Unknown schedule type '{job.schedule_type}'")
        if job.type == JobType.PROFILE_EXECUTION and not job.profile_id:
            raise JobValidationError("ProfileExecution jobs require a profile_id")

        if job.profile_type and job.profile_type.lower() != "export":
            raise JobValidationError(
                f"Unsupported profile_type '{job.profile_type}'; only export profiles can be scheduled"
            )

        if job.profile_id and job.destination_id:
            profile = session.get(Profile, job.profile_id)
            if profile is not None and profile.is_email_export:
                raise JobValidationError(
                    "Email export profiles deliver through their email destination; "
                    "a destination override is not allowed"
                )

        if job.schedule_type == ScheduleType.CRON:
            if not job.cron_expression:
                raise JobValidationError("Cron schedules require a cron_expression")
            try:
                cron_trigger(job.cron_expression)
            except ValueError as e:
                raise JobValidationError(f"Invalid cron expression '{job.cron_expression}': {e}")
        if job.schedule_type == ScheduleType.INTERVAL and job.interval_minutes is not None and job.interval_minutes < 1:
            raise JobValidationError("interval_minutes must be at least 1")
        if job.month_day is not None and not 1 <= job.month_day <= 31:
            raise JobValidationError("month_day must be between 1 and 31")
        if job.max_retries is not None and job.max_retries < 0:
            raise JobValidationError("max_retries cannot be negative")
        if job.timeout_minutes is not None and job.timeout_minutes < 1:
            raise JobValidationError("timeout_minutes must be at least 1")

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_job(self, data: Dict[str, Any], created_by: Optional[str] = None) -> Job:
        values = {k: v for k, v in data.items() if k in JOB_FIELDS and v is not None}
        values["tags"] = sorted(set(values.get("tags") or []))
        job = Job(**values)
        for field, column_default in (("type", JobType.PROFILE_EXECUTION),
                                      ("schedule_type", ScheduleType.MANUAL),
                                      ("is_enabled", True), ("max_retries", 3),
                                      ("timeout_minutes", 60), ("priority", 5),
                                      ("allow_concurrent", False), ("auto_pause_enabled", True)):
            if getattr(job, field) is None:
                setattr(job, field, column_default)

        session = self.session_factory()
        try:
            if session.query(Job).filter(Job.name == job.name).first():
                raise JobValidationError(f"Job name '{job.name}' already exists")
            self._validate(session, job)
            now = utcnow()
            job.status = JobStatus.IDLE
            job.consecutive_failures = 0
            job.created_at = now
            job.created_by = created_by
            job.hash = job.compute_hash()
            job.next_run_time = compute_next_run(job, now)
            session.add(job)
            session.commit()
            logger.info("[STORE] Created job %s '%s' (next_run=%s)", job.id, job.name, job.next_run_time)
            return job
        finally:
            session.close()

    def update_job(self, job_id: int, data: Dict[str, Any]) -> Job:
        def apply(session, job):
            for field, value in data.items():
                if field not in JOB_FIELDS:
                    continue
                if field == "tags":
                    value = sorted(set(value or []))
                setattr(job, field, value)
            self._validate(session, job)
            job.hash = job.compute_hash()
            job.modified_at = utcnow()
            job.next_run_time = compute_next_run(job, job.modified_at)

        job = self._mutate(job_id, apply)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        logger.info("[STORE] Updated job %s (next_run=%s)", job_id, job.next_run_time)
        return job

    def delete_job(self, job_id: int) -> bool:
        with self.locks.lock_for(job_id):
            session = self.session_factory()
            try:
                job = session.get(Job, job_id)
                if job is None:
                    return False
                session.query(JobExecution).filter(JobExecution.job_id == job_id).delete(synchronize_session=False)
                session.delete(job)
                session.commit()
            finally:
                session.close()
        logger.info("[STORE] Deleted job %s and its executions", job_id)
        return True

    def get_job(self, job_id: int) -> Optional[Job]:
        session = self.session_factory()
        try:
            return session.get(Job, job_id)
        finally:
            session.close()

    def list_jobs(self) -> List[Job]:
        session = self.session_factory()
        try:
            return session.query(Job).order_by(Job.id).all()
        finally:
            session.close()

    def get_jobs_by_status(self, status: str) -> List[Job]:
        session = self.session_factory()
        try:
            return session.query(Job).filter(Job.status == status).order_by(Job.id).all()
        finally:
            session.close()

    def get_job_status_summary(self) -> Dict[str, Any]:
        jobs = self.list_jobs()
        by_status = {status: 0 for status in JobStatus.ALL}
        for job in jobs:
            by_status[job.status] = by_status.get(job.status, 0) + 1
        return {
            "total": len(jobs),
            "enabled": sum(1 for j in jobs if j.is_enabled),
            "disabled": sum(1 for j in jobs if not j.is_enabled),
            "circuit_breaker": sum(1 for j in jobs if j.has_tag(CIRCUIT_BREAKER_TAG)),
            "by_status": by_status,
        }

    def update_status(self, job_id: int, status: str) -> bool:
        if status not in JobStatus.ALL:
            raise JobValidationError(f"Unknown job status '{status}'")

        def apply(session, job):
            job.status = status

        return self._mutate(job_id, apply) is not None

    def update_next_run_time(self, job_id: int, next_run_time: Optional[datetime]) -> Optional[datetime]:
        """Persist a next run time; values not in the future are recalculated."""
        def apply(session, job):
            now = utcnow()
            value = ensure_utc(next_run_time)
            if value is None or value <= now:
                value = compute_next_run(job, now)
            job.next_run_time = value

        job = self._mutate(job_id, apply)
        return job.next_run_time if job else None

    # ------------------------------------------------------------------
    # Due jobs & self-healing
    # ------------------------------------------------------------------

    def get_due_jobs(self, now: Optional[datetime] = None) -> List[Job]:
        """
        Enabled jobs whose next run has arrived, highest priority first.
        Runs more than a week overdue are rescheduled instead of returned, and
        enabled non-manual jobs that lost their next run time are repaired.
        """
        now = ensure_utc(now) or utcnow()
        session = self.session_factory()
        try:
            candidates = session.query(Job).filter(
                Job.is_enabled == True,
                Job.status.in_(DUE_STATUSES),
                Job.next_run_time.isnot(None),
                Job.next_run_time <= now,
                or_(Job.end_date.is_(None), Job.end_date >= now),
            ).order_by(Job.priority.desc(), Job.next_run_time.asc()).all()

            orphan_ids = [row.id for row in session.query(Job.id).filter(
                Job.is_enabled == True,
                Job.next_run_time.is_(None),
                Job.schedule_type != ScheduleType.MANUAL,
            ).all()]
        finally:
            session.close()

        due = []
        for job in candidates:
            if job.next_run_time < now - STALE_DUE_AFTER:
                logger.warning(
                    "[STORE] Job %s next run %s is more than 7 days old, rescheduling instead of running",
                    job.id, job.next_run_time.isoformat(),
                )
                self._mutate(job.id, lambda s, j: setattr(j, "next_run_time", compute_next_run(j, now)))
                continue
            due.append(job)

        for job_id in orphan_ids:
            def repair(session, job):
                if job.status == JobStatus.FAILED:
                    job.status = JobStatus.IDLE
                    job.consecutive_failures = 0
                job.next_run_time = compute_next_run(job, now)

            repaired = self._mutate(job_id, repair)
            if repaired is not None:
                logger.warning("[STORE] Repaired missing next run for job %s -> %s", job_id, repaired.next_run_time)

        return due

    def fix_corrupted_next_run_times(self, now: Optional[datetime] = None) -> int:
        """Startup pass: recalculate missing or past next run times of enabled jobs."""
        now = ensure_utc(now) or utcnow()
        session = self.session_factory()
        try:
            ids = [row.id for row in session.query(Job.id).filter(
                Job.is_enabled == True,
                Job.schedule_type != ScheduleType.MANUAL,
                or_(Job.next_run_time.is_(None), Job.next_run_time < now),
            ).all()]
        finally:
            session.close()

        def fix(session, job):
            if job.status == JobStatus.FAILED:
                job.status = JobStatus.IDLE
                job.consecutive_failures = 0
            job.next_run_time = compute_next_run(job, now)

        for job_id in ids:
            self._mutate(job_id, fix)
        if ids:
            logger.warning("[STORE] Fixed next run time for %d jobs", len(ids))
        return len(ids)

    def recover_stuck_executions(self, now: Optional[datetime] = None) -> int:
        """
        Close executions left Running by a crash or restart, and return their
        jobs to Idle so they can be scheduled again.
        """
        now = ensure_utc(now) or utcnow()
        session = self.session_factory()
        try:
            stale = session.query(JobExecution).filter(JobExecution.status == JobStatus.RUNNING).all()
            for execution in stale:
                execution.status = JobStatus.FAILED
                execution.completed_at = now
                suffix = "Recovered as failed on scheduler startup"
                execution.error_message = f"{execution.error_message or ''}\n{suffix}".strip()

            stale_profiles = session.query(ProfileExecution).filter(
                ProfileExecution.status == ExecutionStatus.RUNNING
            ).all()
            for execution in stale_profiles:
                execution.status = ExecutionStatus.FAILED
                execution.completed_at = now
                execution.error_message = "Recovered as failed on scheduler startup"

            running_jobs = session.query(Job).filter(Job.status == JobStatus.RUNNING).all()
            for job in running_jobs:
                job.status = JobStatus.IDLE

            if stale or stale_profiles or running_jobs:
                session.commit()
                logger.warning(
                    "[STORE] Recovered %d stale job executions, %d profile executions, %d running jobs",
                    len(stale), len(stale_profiles), len(running_jobs),
                )
            return len(stale)
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def begin_execution(self, job_id: int, triggered_by: str,
                        parameters: Optional[Dict[str, Any]] = None) -> JobExecution:
        """Mark the job Running and create its execution row."""
        holder = {}

        def start(session, job):
            job.status = JobStatus.RUNNING
            execution = JobExecution(
                job_id=job.id,
                started_at=utcnow(),
                status=JobStatus.RUNNING,
                attempt_number=(job.consecutive_failures or 0) + 1,
                triggered_by=triggered_by,
                server_node=socket.gethostname(),
                execution_context=json.dumps(parameters, default=str) if parameters else None,
            )
            session.add(execution)
            holder["execution"] = execution

        if self._mutate(job_id, start) is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        execution = holder["execution"]
        logger.info("[STORE] Execution %s started for job %s (triggered_by=%s)", execution.id, job_id, triggered_by)
        return execution

    def create_execution(self, job_id: int, triggered_by: str,
                         parameters: Optional[Dict[str, Any]] = None, attempt_number: int = 1) -> JobExecution:
        session = self.session_factory()
        try:
            execution = JobExecution(
                job_id=job_id,
                started_at=utcnow(),
                status=JobStatus.RUNNING,
                attempt_number=attempt_number,
                triggered_by=triggered_by,
                server_node=socket.gethostname(),
                execution_context=json.dumps(parameters, default=str) if parameters else None,
            )
            session.add(execution)
            session.commit()
            return execution
        finally:
            session.close()

    def update_execution(self, execution_id: int, status: str, output_data: Optional[str] = None,
                         error_message: Optional[str] = None, stack_trace: Optional[str] = None,
                         attempt_number: Optional[int] = None, rows_processed: Optional[int] = None,
                         bytes_processed: Optional[int] = None) -> Optional[JobExecution]:
        """
        Terminal update of an execution, then the matching success/failure
        bookkeeping on its job. Both happen under the job's lock.
        """
        session = self.session_factory()
        try:
            execution = session.get(JobExecution, execution_id)
            if execution is None:
                logger.error("[STORE] Execution %s not found for update", execution_id)
                return None
            job_id = execution.job_id
        finally:
            session.close()

        with self.locks.lock_for(job_id):
            session = self.session_factory()
            try:
                execution = session.get(JobExecution, execution_id)
                if execution.status != JobStatus.RUNNING:
                    logger.warning(
                        "[STORE] Execution %s already %s, keeping it", execution_id, execution.status
                    )
                    already_closed = True
                else:
                    already_closed = False
                    execution.status = status
                    execution.output_data = output_data
                    execution.error_message = error_message
                    execution.stack_trace = stack_trace
                    if attempt_number is not None:
                        execution.attempt_number = attempt_number
                    execution.rows_processed = rows_processed
                    execution.bytes_processed = bytes_processed
                    execution.completed_at = utcnow()
                    session.commit()
            finally:
                session.close()

            if already_closed:
                self._release_after_cancel(job_id)
            elif status == JobStatus.COMPLETED:
                self.record_success(job_id)
            elif status == JobStatus.FAILED:
                self.record_failure(job_id)
        return execution

    def _release_after_cancel(self, job_id: int):
        def release(session, job):
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.IDLE
            job.next_run_time = compute_next_run(job)

        self._mutate(job_id, release)

    def get_execution(self, execution_id: int) -> Optional[JobExecution]:
        session = self.session_factory()
        try:
            return session.get(JobExecution, execution_id)
        finally:
            session.close()

    def get_execution_history(self, job_id: int, limit: int = 50) -> List[JobExecution]:
        session = self.session_factory()
        try:
            return session.query(JobExecution).filter(
                JobExecution.job_id == job_id
            ).order_by(JobExecution.started_at.desc(), JobExecution.id.desc()).limit(limit).all()
        finally:
            session.close()

    def get_latest_execution(self, job_id: int) -> Optional[JobExecution]:
        history = self.get_execution_history(job_id, limit=1)
        return history[0] if history else None

    def cancel_execution(self, execution_id: int) -> bool:
        """Mark a Running execution Cancelled. The job goes back to Idle."""
        session = self.session_factory()
        try:
            execution = session.get(JobExecution, execution_id)
            if execution is None or execution.status != JobStatus.RUNNING:
                return False
            job_id = execution.job_id
        finally:
            session.close()

        with self.locks.lock_for(job_id):
            session = self.session_factory()
            try:
                execution = session.get(JobExecution, execution_id)
                if execution.status != JobStatus.RUNNING:
                    return False
                execution.status = JobStatus.CANCELLED
                execution.completed_at = utcnow()
                execution.error_message = "Cancelled by operator"
                job = session.get(Job, job_id)
                if job is not None and job.status == JobStatus.RUNNING:
                    job.status = JobStatus.IDLE
                    job.next_run_time = compute_next_run(job)
                session.commit()
            finally:
                session.close()
        logger.info("[STORE] Execution %s cancelled", execution_id)
        return True

    def purge_history(self, cutoff: datetime) -> int:
        """Delete finished job and profile executions that started before `cutoff`."""
        cutoff = ensure_utc(cutoff)
        session = self.session_factory()
        try:
            deleted = session.query(JobExecution).filter(
                JobExecution.started_at < cutoff,
                JobExecution.status != JobStatus.RUNNING,
            ).delete(synchronize_session=False)

            old_ids = [row.id for row in session.query(ProfileExecution.id).filter(
                ProfileExecution.started_at < cutoff,
                ProfileExecution.status != ExecutionStatus.RUNNING,
            ).all()]
            if old_ids:
                session.query(ProfileExecutionSplit).filter(
                    ProfileExecutionSplit.execution_id.in_(old_ids)
                ).delete(synchronize_session=False)
                deleted += session.query(ProfileExecution).filter(
                    ProfileExecution.id.in_(old_ids)
                ).delete(synchronize_session=False)
            session.commit()
            return deleted
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Outcomes & circuit breaker
    # ------------------------------------------------------------------

    def record_success(self, job_id: int, now: Optional[datetime] = None) -> Optional[Job]:
        now = ensure_utc(now) or utcnow()

        def apply(session, job):
            next_run = None
            if job.schedule_type != ScheduleType.MANUAL:
                next_run = compute_next_run(job, now)
                if next_run is None and not self._schedule_exhausted(job, now):
                    next_run = now + SUCCESS_FALLBACK
                elif next_run is not None and next_run <= now:
                    next_run = now + SUCCESS_SAFETY_BUFFER
            job.next_run_time = next_run
            job.last_run_time = now
            job.last_success_time = now
            job.consecutive_failures = 0
            job.status = JobStatus.IDLE

        job = self._mutate(job_id, apply)
        if job is not None:
            logger.info("[STORE] Job %s succeeded, next run %s", job_id, job.next_run_time)
        return job

    def record_failure(self, job_id: int, now: Optional[datetime] = None) -> Optional[Job]:
        """
        Count one failed job cycle. Reaching the threshold on an auto-pause job
        trips the circuit breaker: the job is disabled and tagged, with a
        cooldown resume time when auto-resume is configured.
        """
        now = ensure_utc(now) or utcnow()
        outcome = {"tripped": False}

        def apply(session, job):
            failures = (job.consecutive_failures or 0) + 1
            job.consecutive_failures = failures
            job.last_run_time = now
            job.last_failure_time = now
            job.status = JobStatus.FAILED

            if job.auto_pause_enabled and failures >= self.circuit_breaker_threshold:
                job.is_enabled = False
                job.add_tag(CIRCUIT_BREAKER_TAG)
                job.next_run_time = now + timedelta(hours=self.cooldown_hours) if self.auto_resume else None
                outcome["tripped"] = True
                return

            if job.schedule_type == ScheduleType.MANUAL:
                job.next_run_time = None
                return

            next_run = compute_next_run(job, now)
            if next_run is None:
                next_run = None if self._schedule_exhausted(job, now) else now + FAILURE_FALLBACK
            elif next_run <= now:
                next_run = now + timedelta(minutes=min(MAX_BACKOFF_MINUTES, 2 ** failures))
            job.next_run_time = next_run

        job = self._mutate(job_id, apply)
        if job is None:
            return None
        if outcome["tripped"]:
            logger.warning(
                "[STORE] Circuit breaker tripped for job %s after %d consecutive failures (resume at %s)",
                job_id, job.consecutive_failures, job.next_run_time or "manual",
            )
        else:
            logger.info(
                "[STORE] Job %s failed (%d consecutive), next run %s",
                job_id, job.consecutive_failures, job.next_run_time,
            )
        return job

    def _reenable(self, job: Job, now: datetime):
        # Enable first: the calculator returns None for disabled jobs
        job.is_enabled = True
        job.consecutive_failures = 0
        job.status = JobStatus.IDLE
        job.remove_tag(CIRCUIT_BREAKER_TAG)
        next_run = compute_next_run(job, now)
        if next_run is None and job.schedule_type != ScheduleType.MANUAL and not self._schedule_exhausted(job, now):
            next_run = now + FAILURE_FALLBACK
        job.next_run_time = next_run

    def re_enable_circuit_breaker_jobs(self, now: Optional[datetime] = None) -> int:
        """Resume tripped jobs whose cooldown has elapsed. No-op without auto-resume."""
        if not self.auto_resume:
            return 0
        now = ensure_utc(now) or utcnow()
        session = self.session_factory()
        try:
            candidates = session.query(Job).filter(
                Job.is_enabled == False,
                Job.next_run_time.isnot(None),
                Job.next_run_time <= now,
            ).all()
            ids = [job.id for job in candidates if job.has_tag(CIRCUIT_BREAKER_TAG)]
        finally:
            session.close()

        resumed = 0
        for job_id in ids:
            if self._mutate(job_id, lambda s, j: self._reenable(j, now)) is not None:
                resumed += 1
                logger.info("[STORE] Auto-resumed circuit breaker job %s", job_id)
        return resumed

    def resume_circuit_breaker_job(self, job_id: int, now: Optional[datetime] = None) -> bool:
        now = ensure_utc(now) or utcnow()
        job = self._mutate(job_id, lambda s, j: self._reenable(j, now))
        if job is None:
            return False
        logger.info("[STORE] Resumed job %s, next run %s", job_id, job.next_run_time)
        return True

    def reset_failure_counter(self, job_id: int) -> bool:
        def apply(session, job):
            job.consecutive_failures = 0
            if job.status == JobStatus.FAILED:
                job.status = JobStatus.IDLE

        return self._mutate(job_id, apply) is not None
