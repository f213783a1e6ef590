"""
Job Management Service. Operator-facing facade over the job store and the
scheduler: list, create, edit, trigger and inspect export jobs.
Every call returns a {"success": bool, ...} dictionary.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy import func

from dataexport.job_store import (
    JobNotFoundError, JobRejectedError, JobValidationError,
)
from dataexport.models import Job, ProfileExecution, ProfileExecutionSplit
from dataexport.scheduler import scheduler
from dataexport.schedule import describe_schedule

logger = logging.getLogger(__name__)

# error_code values the HTTP layer maps to status codes
NOT_FOUND = "not_found"
REJECTED = "rejected"
INVALID = "invalid"


def _ts(value) -> Optional[str]:
    return value.isoformat() if value else None


class JobService:
    @staticmethod
    def _serialize_job(job: Job) -> Dict[str, Any]:
        return {
            "id": job.id,
            "name": job.name,
            "description": job.description,
            "type": job.type,
            "profile_id": job.profile_id,
            "profile_type": job.profile_type,
            "destination_id": job.destination_id,
            "schedule_type": job.schedule_type,
            "schedule": describe_schedule(job),
            "cron_expression": job.cron_expression,
            "interval_minutes": job.interval_minutes,
            "start_date": _ts(job.start_date),
            "end_date": _ts(job.end_date),
            "start_time": job.start_time.strftime("%H:%M:%S") if job.start_time else None,
            "end_time": job.end_time.strftime("%H:%M:%S") if job.end_time else None,
            "week_days": job.week_days,
            "month_day": job.month_day,
            "max_retries": job.max_retries,
            "timeout_minutes": job.timeout_minutes,
            "priority": job.priority,
            "allow_concurrent": job.allow_concurrent,
            "depends_on_job_ids": job.depends_on_job_ids,
            "auto_pause_enabled": job.auto_pause_enabled,
            "is_enabled": job.is_enabled,
            "status": job.status,
            "next_run_time": _ts(job.next_run_time),
            "last_run_time": _ts(job.last_run_time),
            "last_success_time": _ts(job.last_success_time),
            "last_failure_time": _ts(job.last_failure_time),
            "consecutive_failures": job.consecutive_failures,
            "tags": sorted(job.tag_set),
        }

    @staticmethod
    def _serialize_execution(execution) -> Dict[str, Any]:
        return {
            "id": execution.id,
            "job_id": execution.job_id,
            "status": execution.status,
            "attempt_number": execution.attempt_number,
            "triggered_by": execution.triggered_by,
            "server_node": execution.server_node,
            "started_at": _ts(execution.started_at),
            "completed_at": _ts(execution.completed_at),
            "output_data": execution.output_data,
            "error_message": execution.error_message,
            "stack_trace": execution.stack_trace[-2000:] if execution.stack_trace else None,
        }

    @staticmethod
    def list_jobs():
        """List all jobs with status and schedule."""
        try:
            data = [JobService._serialize_job(job) for job in scheduler.store.list_jobs()]
            return {"success": True, "data": data, "count": len(data)}
        except Exception as e:
            logger.error(f"List jobs error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def get_job(job_id: int):
        job = scheduler.store.get_job(job_id)
        if job is None:
            return {"success": False, "error": f"Job {job_id} not found", "error_code": NOT_FOUND}
        return {"success": True, "data": JobService._serialize_job(job)}

    @staticmethod
    def find_job(session, job_name: str):
        """
        Resolve job by name.
        Priority: exact case-insensitive match, then unique partial match.
        """
        exact = session.query(Job).filter(func.lower(Job.name) == job_name.lower()).first()
        if exact:
            return exact, None

        partial_matches = session.query(Job).filter(
            Job.name.ilike(f"%{job_name}%")
        ).order_by(Job.name.asc()).limit(5).all()

        if not partial_matches:
            return None, f"Job '{job_name}' not found"
        if len(partial_matches) > 1:
            names = ", ".join(m.name for m in partial_matches[:3])
            return None, f"Ambiguous job name '{job_name}'. Matches: {names}"
        return partial_matches[0], None

    @staticmethod
    def get_job_by_name(job_name: str):
        session = scheduler.store.session_factory()
        try:
            job, error = JobService.find_job(session, job_name)
            if not job:
                return {"success": False, "error": error, "error_code": NOT_FOUND}
            return {"success": True, "data": JobService._serialize_job(job)}
        finally:
            session.close()

    @staticmethod
    def create_job(data: Dict[str, Any], created_by: Optional[str] = None):
        try:
            job = scheduler.store.create_job(data, created_by=created_by)
        except JobValidationError as e:
            return {"success": False, "error": str(e), "error_code": INVALID}
        return {"success": True, "data": JobService._serialize_job(job)}

    @staticmethod
    def update_job(job_id: int, data: Dict[str, Any]):
        try:
            job = scheduler.store.update_job(job_id, data)
        except JobNotFoundError as e:
            return {"success": False, "error": str(e), "error_code": NOT_FOUND}
        except JobValidationError as e:
            return {"success": False, "error": str(e), "error_code": INVALID}
        if not job.is_enabled:
            scheduler.forget_job(job_id)
        return {"success": True, "data": JobService._serialize_job(job)}

    @staticmethod
    def delete_job(job_id: int):
        if not scheduler.store.delete_job(job_id):
            return {"success": False, "error": f"Job {job_id} not found", "error_code": NOT_FOUND}
        scheduler.forget_job(job_id)
        return {"success": True, "message": f"Job {job_id} deleted"}

    @staticmethod
    async def trigger_job(job_id: int, ignore_dependencies: bool = False,
                          parameters: Optional[Dict[str, Any]] = None, triggered_by: str = "Manual"):
        """Manually trigger a job. Returns as soon as the execution has started."""
        try:
            execution_id = await scheduler.trigger_job(job_id, ignore_dependencies, parameters, triggered_by)
        except JobNotFoundError as e:
            return {"success": False, "error": str(e), "error_code": NOT_FOUND}
        except JobRejectedError as e:
            return {"success": False, "error": str(e), "error_code": REJECTED}
        logger.info(f"[APP] Job {job_id} triggered by {triggered_by} (execution {execution_id})")
        return {"success": True, "job_id": job_id, "execution_id": execution_id}

    @staticmethod
    def get_job_logs(job_id: int, limit: int = 50):
        """Recent executions of a job, newest first."""
        if scheduler.store.get_job(job_id) is None:
            return {"success": False, "error": f"Job {job_id} not found", "error_code": NOT_FOUND}
        executions = scheduler.store.get_execution_history(job_id, limit=limit)
        data = [JobService._serialize_execution(e) for e in executions]
        return {"success": True, "job_id": job_id, "data": data, "count": len(data)}

    @staticmethod
    def cancel_execution(execution_id: int):
        execution = scheduler.store.get_execution(execution_id)
        if execution is None:
            return {"success": False, "error": f"Execution {execution_id} not found", "error_code": NOT_FOUND}
        if not scheduler.executor.cancel_running(execution.job_id):
            if not scheduler.store.cancel_execution(execution_id):
                return {"success": False, "error": f"Execution {execution_id} is not running",
                        "error_code": REJECTED}
        return {"success": True, "message": f"Execution {execution_id} cancelled"}

    @staticmethod
    def resume_job(job_id: int):
        """Manually re-enable a job the circuit breaker paused."""
        if not scheduler.store.resume_circuit_breaker_job(job_id):
            return {"success": False, "error": f"Job {job_id} not found", "error_code": NOT_FOUND}
        return JobService.get_job(job_id)

    @staticmethod
    def reset_failures(job_id: int):
        if not scheduler.store.reset_failure_counter(job_id):
            return {"success": False, "error": f"Job {job_id} not found", "error_code": NOT_FOUND}
        return {"success": True, "message": f"Failure counter of job {job_id} reset"}

    @staticmethod
    def get_job_status():
        """Overview of all jobs by status, plus upcoming runs."""
        try:
            return {
                "success": True,
                "summary": scheduler.store.get_job_status_summary(),
                "next_runs": scheduler.get_next_runs()[:10],
            }
        except Exception as e:
            logger.error(f"Job status error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def get_queue_status():
        return {"success": True, "data": scheduler.get_queue_status()}

    @staticmethod
    def get_profile_execution_splits(execution_id: int):
        session = scheduler.store.session_factory()
        try:
            execution = session.get(ProfileExecution, execution_id)
            if execution is None:
                return {"success": False, "error": f"Profile execution {execution_id} not found",
                        "error_code": NOT_FOUND}
            splits = session.query(ProfileExecutionSplit).filter(
                ProfileExecutionSplit.execution_id == execution_id
            ).order_by(ProfileExecutionSplit.id).all()
            data = [{
                "id": s.id,
                "split_key": s.split_key,
                "row_count": s.row_count,
                "status": s.status,
                "output_path": s.output_path,
                "file_size_bytes": s.file_size_bytes,
                "error_message": s.error_message,
                "started_at": _ts(s.started_at),
                "completed_at": _ts(s.completed_at),
            } for s in splits]
            return {
                "success": True,
                "execution_id": execution_id,
                "status": execution.status,
                "split_count": execution.split_count,
                "split_success_count": execution.split_success_count,
                "split_failure_count": execution.split_failure_count,
                "data": data,
            }
        finally:
            session.close()
