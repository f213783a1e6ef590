import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.job_queue import JobQueue
from core.timeutil import utcnow
from dataexport.executor import JobExecutor
from dataexport.job_store import JobAlreadyRunningError
from dataexport.models import Job, JobStatus
from dataexport.scheduler import ExportScheduler


def make_due(session_factory, job_id, minutes_ago=5):
    session = session_factory()
    try:
        job = session.get(Job, job_id)
        job.next_run_time = utcnow() - timedelta(minutes=minutes_ago)
        session.commit()
    finally:
        session.close()


@pytest.fixture
def make_scheduler(store):
    def _make(executor=None, max_concurrent=2):
        return ExportScheduler(
            store,
            executor or MagicMock(),
            JobQueue(max_concurrent),
            dispatcher=MagicMock(),
            check_interval_seconds=5,
            startup_delay_seconds=60,
        )
    return _make


def test_injected_empty_queue_is_kept(store):
    queue = JobQueue(2)
    executor = MagicMock()
    scheduler = ExportScheduler(store, executor, queue, check_interval_seconds=0)

    assert scheduler.queue is queue
    assert scheduler.queue.max_concurrent_jobs == 2
    assert scheduler.executor is executor
    assert scheduler.check_interval_seconds == 0


def interval_job(store, name, **overrides):
    data = {"name": name, "type": "HealthCheck", "schedule_type": "Interval", "interval_minutes": 60,
            "max_retries": 0}
    data.update(overrides)
    return store.create_job(data)


@pytest.mark.asyncio
async def test_poll_enqueues_each_due_job_once(store, session_factory, make_scheduler):
    scheduler = make_scheduler()
    due = interval_job(store, "due")
    interval_job(store, "later")
    make_due(session_factory, due.id)

    assert await scheduler.poll_due_jobs() == 1
    assert await scheduler.poll_due_jobs() == 0
    assert scheduler.queue.contains(due.id)
    assert len(scheduler.queue) == 1


@pytest.mark.asyncio
async def test_poll_survives_store_errors(make_scheduler, monkeypatch):
    scheduler = make_scheduler()
    monkeypatch.setattr(scheduler.store, "get_due_jobs", MagicMock(side_effect=RuntimeError("db down")))
    assert await scheduler.poll_due_jobs() == 0


@pytest.mark.asyncio
async def test_dequeued_job_releases_its_slot_when_rejected(store, make_scheduler):
    executor = MagicMock()
    executor.run_job = AsyncMock(side_effect=JobAlreadyRunningError("busy"))
    scheduler = make_scheduler(executor, max_concurrent=1)
    job = interval_job(store, "busy")

    scheduler.queue.enqueue(job)
    dequeued = await scheduler.queue.dequeue()
    assert scheduler.queue.available_slots == 0

    await scheduler._run_dequeued(dequeued)
    executor.run_job.assert_awaited_once_with(job.id, triggered_by="Scheduler")
    assert scheduler.queue.available_slots == 1


@pytest.mark.asyncio
async def test_manual_trigger_bypasses_and_clears_the_queue(store, make_scheduler):
    executor = MagicMock()
    executor.trigger_job = AsyncMock(return_value=42)
    scheduler = make_scheduler(executor)
    job = interval_job(store, "manual")
    scheduler.queue.enqueue(job)

    assert await scheduler.trigger_job(job.id, parameters={"full": True}) == 42
    executor.trigger_job.assert_awaited_once_with(job.id, "Manual", False, {"full": True})
    assert not scheduler.queue.contains(job.id)


def test_next_runs_are_sorted_and_skip_disabled(store, make_scheduler):
    scheduler = make_scheduler()
    interval_job(store, "hourly", interval_minutes=60)
    interval_job(store, "quarter", interval_minutes=15)
    interval_job(store, "paused", interval_minutes=5, is_enabled=False)
    store.create_job({"name": "adhoc", "type": "HealthCheck"})

    assert [run["name"] for run in scheduler.get_next_runs()] == ["quarter", "hourly"]


@pytest.mark.asyncio
async def test_service_loop_recovers_then_runs_due_jobs(store, session_factory, make_scheduler):
    stuck = interval_job(store, "stuck")
    stuck_execution = store.begin_execution(stuck.id, "Scheduler")

    executor = JobExecutor(store, MagicMock(), MagicMock(), retry_base_delay=0)
    scheduler = make_scheduler(executor)
    scheduler.start()
    try:
        recovered = store.get_execution(stuck_execution.id)
        assert recovered.status == JobStatus.FAILED
        assert "Recovered as failed on scheduler startup" in recovered.error_message
        assert store.get_job(stuck.id).status == JobStatus.IDLE

        make_due(session_factory, stuck.id)
        assert await scheduler.poll_due_jobs() == 1

        for _ in range(100):
            latest = store.get_latest_execution(stuck.id)
            if latest.id != stuck_execution.id and latest.status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.02)
        assert latest.status == JobStatus.COMPLETED
        assert latest.triggered_by == "Scheduler"

        status = scheduler.get_queue_status()
        assert status["consumer_alive"] is True
        assert status["queue_depth"] == 0
    finally:
        await scheduler.shutdown()

    assert scheduler.queue.available_slots == 2
    assert store.get_job(stuck.id).next_run_time > utcnow()
