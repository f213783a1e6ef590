import asyncio
import json
import os
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import ANY, MagicMock

import pytest

import dataexport.executor as executor_module
from dataexport import config
from dataexport.executor import JobExecutor, JobOutcome
from dataexport.job_store import (
    JobAlreadyRunningError, JobDependencyError, JobDisabledError, JobNotFoundError,
)
from dataexport.models import Job, JobExecution, JobStatus
from dataexport.orchestrator import ProfileRunResult


def make_executor(store, orchestrator=None, session_factory=None):
    return JobExecutor(store, orchestrator or MagicMock(), MagicMock(),
                       session_factory=session_factory or store.session_factory, retry_base_delay=0)


def manual_job(store, **overrides):
    data = {"name": "job", "type": "HealthCheck", "max_retries": 0}
    data.update(overrides)
    return store.create_job(data)


# ============================================================================
# Pre-flight
# ============================================================================

class TestPreflight:
    def test_missing_job(self, store):
        with pytest.raises(JobNotFoundError):
            make_executor(store).start_execution(123, "Manual")

    def test_disabled_job(self, store):
        job = manual_job(store, is_enabled=False)
        with pytest.raises(JobDisabledError):
            make_executor(store).start_execution(job.id, "Manual")

    def test_already_running_job(self, store):
        job = manual_job(store)
        executor = make_executor(store)
        executor.start_execution(job.id, "Manual")
        with pytest.raises(JobAlreadyRunningError):
            executor.start_execution(job.id, "Manual")

    def test_concurrent_job_may_start_twice(self, store):
        job = manual_job(store, allow_concurrent=True)
        executor = make_executor(store)
        _, first = executor.start_execution(job.id, "Manual")
        _, second = executor.start_execution(job.id, "Manual")
        assert first != second

    def test_unmet_dependency(self, store):
        upstream = manual_job(store, name="upstream")
        job = manual_job(store, name="downstream", depends_on_job_ids=str(upstream.id))
        executor = make_executor(store)
        with pytest.raises(JobDependencyError):
            executor.start_execution(job.id, "Manual")

        _, execution_id = executor.start_execution(job.id, "Manual", ignore_dependencies=True)
        assert store.get_execution(execution_id).status == JobStatus.RUNNING

    def test_met_dependency(self, store):
        upstream = manual_job(store, name="upstream")
        execution = store.begin_execution(upstream.id, "Manual")
        store.update_execution(execution.id, JobStatus.COMPLETED)
        job = manual_job(store, name="downstream", depends_on_job_ids=str(upstream.id))

        job_snapshot, execution_id = make_executor(store).start_execution(job.id, "Manual")
        assert job_snapshot.id == job.id
        assert store.get_job(job.id).status == JobStatus.RUNNING


# ============================================================================
# Execution cycle
# ============================================================================

class TestExecution:
    @pytest.mark.asyncio
    async def test_health_check_completes(self, store):
        job = manual_job(store)
        executor = make_executor(store)
        execution_id = await executor.run_job(job.id, "Manual")

        execution = store.get_execution(execution_id)
        assert execution.status == JobStatus.COMPLETED
        assert execution.attempt_number == 1
        output = json.loads(execution.output_data)
        assert output["status"] == "healthy"
        assert "uptimeSeconds" in output
        executor.dispatcher.notify_job_success.assert_called_once()
        assert store.get_job(job.id).status == JobStatus.IDLE

    @pytest.mark.asyncio
    async def test_unknown_type_fails_after_all_attempts(self, store):
        job = manual_job(store, type="Custom", max_retries=2)
        executor = make_executor(store)
        execution_id = await executor.run_job(job.id, "Manual")

        execution = store.get_execution(execution_id)
        assert execution.status == JobStatus.FAILED
        assert execution.error_message == "Job type Custom is not yet implemented"
        assert execution.attempt_number == 3
        assert store.get_job(job.id).consecutive_failures == 1
        executor.dispatcher.notify_job_failure.assert_called_once_with(
            job.id, job.name, "Job type Custom is not yet implemented"
        )

    @pytest.mark.asyncio
    async def test_profile_job_delegates_to_orchestrator(self, store):
        orchestrator = MagicMock()
        orchestrator.execute_profile.return_value = ProfileRunResult(41, True, "/exports/orders.json")
        job = manual_job(store, type="ProfileExecution", profile_id=8)
        executor = make_executor(store, orchestrator)

        execution_id = await executor.run_job(job.id, "Manual", parameters={"region": "eu"})

        orchestrator.execute_profile.assert_called_once_with(
            8, {"region": "eu"}, f"Job-{job.id}", job.id, None, deadline=ANY
        )
        deadline = orchestrator.execute_profile.call_args.kwargs["deadline"]
        assert 0 < deadline - time.monotonic() <= 60 * 60
        output = json.loads(store.get_execution(execution_id).output_data)
        assert output == {"executionId": 41, "outputPath": "/exports/orders.json"}

    @pytest.mark.asyncio
    async def test_import_profile_job_is_not_run_as_an_export(self, store):
        orchestrator = MagicMock()
        job = manual_job(store, type="ProfileExecution", profile_id=8)
        session = store.session_factory()
        try:
            # Rows written before profile_type was validated
            session.get(Job, job.id).profile_type = "import"
            session.commit()
        finally:
            session.close()

        execution_id = await make_executor(store, orchestrator).run_job(job.id, "Manual")

        execution = store.get_execution(execution_id)
        assert execution.status == JobStatus.FAILED
        assert execution.error_message == "Profile type 'import' is not supported"
        orchestrator.execute_profile.assert_not_called()

    @pytest.mark.asyncio
    async def test_exception_is_retried_then_succeeds(self, store):
        orchestrator = MagicMock()
        orchestrator.execute_profile.side_effect = [
            RuntimeError("connection reset"),
            ProfileRunResult(1, False, None, "query failed"),
            ProfileRunResult(2, True, "/tmp/out.json"),
        ]
        job = manual_job(store, type="ProfileExecution", profile_id=8, max_retries=3)
        execution_id = await make_executor(store, orchestrator).run_job(job.id, "Manual")

        execution = store.get_execution(execution_id)
        assert execution.status == JobStatus.COMPLETED
        assert execution.attempt_number == 3
        assert orchestrator.execute_profile.call_count == 3

    @pytest.mark.asyncio
    async def test_exception_on_final_attempt_records_stack_trace(self, store):
        orchestrator = MagicMock()
        orchestrator.execute_profile.side_effect = RuntimeError("database is locked")
        job = manual_job(store, type="ProfileExecution", profile_id=8, max_retries=1)
        executor = make_executor(store, orchestrator)
        execution_id = await executor.run_job(job.id, "Manual")

        execution = store.get_execution(execution_id)
        assert execution.status == JobStatus.FAILED
        assert execution.error_message == "database is locked"
        assert "RuntimeError" in execution.stack_trace
        assert execution.attempt_number == 2
        assert store.get_job(job.id).consecutive_failures == 1
        executor.dispatcher.notify_job_failure.assert_called_once()

    @pytest.mark.asyncio
    async def test_retry_backoff_doubles(self, store, monkeypatch):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        monkeypatch.setattr(executor_module.asyncio, "sleep", fake_sleep)
        job = manual_job(store, type="Custom", max_retries=3)
        executor = JobExecutor(store, MagicMock(), MagicMock(), retry_base_delay=1.0)
        await executor.run_job(job.id, "Manual")
        assert delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, store, monkeypatch):
        monkeypatch.setattr(executor_module, "SECONDS_PER_MINUTE", 0.01)
        job = manual_job(store, timeout_minutes=1)
        executor = make_executor(store)

        async def slow(*args):
            await asyncio.sleep(5)
            return JobOutcome(True)

        monkeypatch.setattr(executor, "_dispatch", slow)
        execution_id = await executor.run_job(job.id, "Manual")

        execution = store.get_execution(execution_id)
        assert execution.status == JobStatus.FAILED
        assert execution.error_message == "Job timed out after 1 minutes"
        assert store.get_job(job.id).consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_timed_out_profile_job_warns_about_the_background_run(self, store, monkeypatch, caplog):
        monkeypatch.setattr(executor_module, "SECONDS_PER_MINUTE", 0.01)
        job = manual_job(store, type="ProfileExecution", profile_id=8, timeout_minutes=1)
        executor = make_executor(store)
        deadlines = []

        async def slow(job, execution_id, parameters, deadline):
            deadlines.append(deadline)
            await asyncio.sleep(5)
            return JobOutcome(True)

        monkeypatch.setattr(executor, "_dispatch", slow)
        with caplog.at_level("WARNING", logger="dataexport.executor"):
            execution_id = await executor.run_job(job.id, "Manual")

        assert store.get_execution(execution_id).error_message == "Job timed out after 1 minutes"
        assert len(deadlines) == 1
        assert "keeps going in the background" in caplog.text

    @pytest.mark.asyncio
    async def test_trigger_returns_before_completion_and_can_be_cancelled(self, store, monkeypatch):
        job = manual_job(store)
        executor = make_executor(store)
        started = asyncio.Event()

        async def slow(*args):
            started.set()
            await asyncio.sleep(5)
            return JobOutcome(True)

        monkeypatch.setattr(executor, "_dispatch", slow)
        execution_id = await executor.trigger_job(job.id)
        assert store.get_execution(execution_id).status == JobStatus.RUNNING
        await asyncio.wait_for(started.wait(), 1)
        assert executor.running_jobs() == {job.id: execution_id}

        assert executor.cancel_running(job.id) is True
        await executor.shutdown()

        assert store.get_execution(execution_id).status == JobStatus.CANCELLED
        assert store.get_job(job.id).status == JobStatus.IDLE
        assert executor.running_jobs() == {}
        assert executor.cancel_running(job.id) is False


# ============================================================================
# Maintenance job types
# ============================================================================

class TestMaintenanceJobs:
    @pytest.mark.asyncio
    async def test_backup_copies_database(self, store, monkeypatch, tmp_path):
        backup_dir = tmp_path / "backups"
        monkeypatch.setattr(config, "BACKUP_DIR", str(backup_dir))
        job = manual_job(store, type="BackupDatabase")
        execution_id = await make_executor(store).run_job(job.id, "Manual")

        execution = store.get_execution(execution_id)
        assert execution.status == JobStatus.COMPLETED
        output = json.loads(execution.output_data)
        assert os.path.exists(output["backupPath"])
        assert os.path.basename(output["backupPath"]).startswith("dataexport_backup_")
        assert output["fileSizeBytes"] > 0

    @pytest.mark.asyncio
    async def test_backup_never_overwrites(self, store, monkeypatch, tmp_path):
        fixed = datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        monkeypatch.setattr(config, "BACKUP_DIR", str(tmp_path))
        monkeypatch.setattr(executor_module, "utcnow", lambda: fixed)
        existing = tmp_path / "dataexport_backup_20300102_030405.db"
        existing.write_text("previous backup")

        job = manual_job(store, type="BackupDatabase")
        execution_id = await make_executor(store).run_job(job.id, "Manual")

        execution = store.get_execution(execution_id)
        assert execution.status == JobStatus.FAILED
        assert "already exists" in execution.error_message
        assert existing.read_text() == "previous backup"

    def test_backups_in_the_same_second_keep_the_first_file(self, store, monkeypatch, tmp_path):
        fixed = datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        monkeypatch.setattr(config, "BACKUP_DIR", str(tmp_path))
        monkeypatch.setattr(executor_module, "utcnow", lambda: fixed)
        executor = make_executor(store)

        first = executor._backup_database()
        assert first.success
        with open(first.output["backupPath"], "rb") as f:
            copied = f.read()

        second = executor._backup_database()
        assert second.success is False
        assert second.error == f"Backup file already exists: {first.output['backupPath']}"
        with open(first.output["backupPath"], "rb") as f:
            assert f.read() == copied

    @pytest.mark.asyncio
    async def test_cleanup_purges_old_history(self, store, session_factory, monkeypatch):
        monkeypatch.setattr(config, "CLEANUP_RETENTION_DAYS", 30)
        other = manual_job(store, name="other")
        old = store.create_execution(other.id, "Manual")
        session = session_factory()
        try:
            row = session.get(JobExecution, old.id)
            row.status = JobStatus.COMPLETED
            row.started_at = datetime.now(timezone.utc) - timedelta(days=45)
            session.commit()
        finally:
            session.close()

        job = manual_job(store, type="Cleanup", name="cleanup")
        execution_id = await make_executor(store).run_job(job.id, "Manual")

        output = json.loads(store.get_execution(execution_id).output_data)
        assert output["deletedRecords"] == 1
        assert store.get_execution(old.id) is None
        assert store.get_job(other.id) is not None
