import json

import pytest

from dataexport.database import build_engine, init_db, make_session_factory
from dataexport.job_store import JobStore
from dataexport.models import Connection, Destination, Job, JobStatus, Profile, QueryTemplate


@pytest.fixture
def engine(tmp_path):
    db_engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory, circuit_breaker_threshold=3, auto_resume=False, cooldown_hours=1)


@pytest.fixture
def make_job():
    """Unsaved Job with every schedule field set explicitly."""
    def _make(**overrides):
        values = dict(
            id=1, name="job", type="HealthCheck", schedule_type="Interval", interval_minutes=60,
            cron_expression=None, start_date=None, end_date=None, start_time=None, end_time=None,
            week_days=None, month_day=None, is_enabled=True, status=JobStatus.IDLE,
            max_retries=0, timeout_minutes=60, priority=5, allow_concurrent=False,
            auto_pause_enabled=True, consecutive_failures=0, tags=[],
        )
        values.update(overrides)
        return Job(**values)
    return _make


@pytest.fixture
def seed(session_factory):
    """Insert rows and return their ids: seed(Model(...)) -> id."""
    def _seed(*entities):
        session = session_factory()
        try:
            session.add_all(entities)
            session.commit()
            ids = [e.id for e in entities]
        finally:
            session.close()
        return ids[0] if len(ids) == 1 else ids
    return _seed


@pytest.fixture
def export_setup(seed, tmp_path):
    """A connection, a Local destination under tmp_path and a factory for profiles using them."""
    connection_id = seed(Connection(name="warehouse", type="SQLite", connection_string="sqlite://"))
    export_dir = tmp_path / "exports"
    destination_id = seed(Destination(
        name="local", type="Local", configuration_json=json.dumps({"path": str(export_dir)}),
    ))

    def make_profile(**overrides):
        values = dict(
            name=overrides.pop("name", "Orders"),
            connection_id=connection_id,
            query="SELECT * FROM orders",
            output_format="JSON",
            output_destination_id=destination_id,
        )
        values.update(overrides)
        return seed(Profile(**values))

    return {
        "connection_id": connection_id,
        "destination_id": destination_id,
        "export_dir": export_dir,
        "make_profile": make_profile,
        "seed": seed,
    }


@pytest.fixture
def email_template(seed):
    return seed(QueryTemplate(name="email", template="<p>{{ rows }}</p>", output_format="HTML"))
