"""
SQLAlchemy models for export jobs, profiles and their execution history.
"""
import hashlib
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Time, JSON,
    Boolean, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

from core.timeutil import ensure_utc, utcnow

Base = declarative_base()

CIRCUIT_BREAKER_TAG = "circuit-breaker"


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class JobType:
    PROFILE_EXECUTION = "ProfileExecution"
    HEALTH_CHECK = "HealthCheck"
    BACKUP_DATABASE = "BackupDatabase"
    CLEANUP = "Cleanup"
    CUSTOM = "Custom"


class ScheduleType:
    MANUAL = "Manual"
    INTERVAL = "Interval"
    CRON = "Cron"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"

    ALL = (MANUAL, INTERVAL, CRON, DAILY, WEEKLY, MONTHLY)


class JobStatus:
    IDLE = "Idle"
    SCHEDULED = "Scheduled"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    ALL = (IDLE, SCHEDULED, RUNNING, COMPLETED, FAILED, CANCELLED)


class ExecutionStatus:
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"
    PARTIAL = "Partial"
    SKIPPED = "Skipped"


# ============================================================================
# Jobs
# ============================================================================

class Job(Base):
    """A schedulable unit of work with a recurrence rule."""
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, unique=True)
    description = Column(Text, default="")
    type = Column(String(30), nullable=False, default=JobType.PROFILE_EXECUTION)
    profile_id = Column(Integer)                                # export profile
    profile_type = Column(String(20))                           # null or "export"
    destination_id = Column(Integer)                            # Optional destination override
    custom_action = Column(Text)                                # JSON payload for Custom jobs

    # Schedule
    schedule_type = Column(String(20), nullable=False, default=ScheduleType.MANUAL)
    cron_expression = Column(String(100))                       # e.g. "0 6 * * *"
    interval_minutes = Column(Integer)
    start_date = Column(UTCDateTime)
    end_date = Column(UTCDateTime)
    start_time = Column(Time)                                   # Daily run time / window start
    end_time = Column(Time)                                     # Window end
    week_days = Column(String(20))                              # e.g. "0,2,4" (0=Monday)
    month_day = Column(Integer)                                 # 1-31, clamped to month length

    # Execution policy
    max_retries = Column(Integer, nullable=False, default=3)
    timeout_minutes = Column(Integer, nullable=False, default=60)
    priority = Column(Integer, nullable=False, default=5)       # Lower value dequeues first
    allow_concurrent = Column(Boolean, nullable=False, default=False)
    depends_on_job_ids = Column(String(200))                    # Comma-separated job ids
    auto_pause_enabled = Column(Boolean, nullable=False, default=True)

    # State
    is_enabled = Column(Boolean, nullable=False, default=True)
    status = Column(String(20), nullable=False, default=JobStatus.IDLE)
    next_run_time = Column(UTCDateTime)
    last_run_time = Column(UTCDateTime)
    last_success_time = Column(UTCDateTime)
    last_failure_time = Column(UTCDateTime)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    tags = Column(JSON, nullable=False, default=list)

    hash = Column(String(64), default="")
    created_at = Column(UTCDateTime, default=utcnow)
    modified_at = Column(UTCDateTime)
    created_by = Column(String(100))

    executions = relationship("JobExecution", back_populates="job", cascade="all, delete-orphan",
                              passive_deletes=True)

    __table_args__ = (
        Index("ix_jobs_due", "is_enabled", "status", "next_run_time"),
    )

    @property
    def tag_set(self) -> set:
        return set(self.tags or [])

    def has_tag(self, tag: str) -> bool:
        return tag in self.tag_set

    def add_tag(self, tag: str):
        # Assign a new list so the JSON column registers the change
        self.tags = sorted(self.tag_set | {tag})

    def remove_tag(self, tag: str):
        self.tags = sorted(self.tag_set - {tag})

    def compute_hash(self) -> str:
        payload = f"{self.name}|{self.type}|{self.schedule_type}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def dependency_ids(self) -> list:
        ids = []
        for part in (self.depends_on_job_ids or "").split(","):
            part = part.strip()
            if part.isdigit():
                ids.append(int(part))
        return ids

    def __repr__(self):
        return f"<Job {self.name} ({self.schedule_type}, status={self.status})>"


class JobExecution(Base):
    """One attempt-cycle of a job (all retries included)."""
    __tablename__ = "job_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime)
    status = Column(String(20), nullable=False, default=JobStatus.RUNNING)
    attempt_number = Column(Integer, nullable=False, default=1)
    triggered_by = Column(String(100))                          # Scheduler, Manual, API, ...
    server_node = Column(String(200))
    execution_context = Column(Text)                            # JSON parameters
    output_data = Column(Text)
    error_message = Column(Text)
    stack_trace = Column(Text)
    bytes_processed = Column(Integer)
    rows_processed = Column(Integer)

    job = relationship("Job", back_populates="executions")

    __table_args__ = (
        Index("ix_job_executions_job_status", "job_id", "status"),
        Index("ix_job_executions_started", "started_at"),
    )

    def __repr__(self):
        return f"<JobExecution {self.id} job={self.job_id} {self.status}>"


# ============================================================================
# Profiles & Sources
# ============================================================================

class Connection(Base):
    """Source database a profile queries."""
    __tablename__ = "connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, unique=True)
    type = Column(String(30), nullable=False, default="SQLite")  # SqlServer, PostgreSQL, MySQL, SQLite
    connection_string = Column(Text, nullable=False)             # SQLAlchemy URL
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, default=utcnow)


class Destination(Base):
    """Reusable delivery target."""
    __tablename__ = "destinations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, unique=True)
    type = Column(String(30), nullable=False)                    # Local, Http, Email
    configuration_json = Column(Text, default="{}")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, default=utcnow)


class QueryTemplate(Base):
    """Transformation or email body template."""
    __tablename__ = "query_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    template = Column(Text, nullable=False)
    output_format = Column(String(20), default="JSON")
    created_at = Column(UTCDateTime, default=utcnow)


class Profile(Base):
    """A parameterized export definition: query + transform + destination."""
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, unique=True)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=False)
    query = Column(Text, nullable=False)
    output_format = Column(String(20), nullable=False, default="JSON")   # JSON, XML, CSV, YAML
    output_destination_type = Column(String(30), default="Local")
    output_destination_config = Column(Text)                             # Inline JSON config
    output_destination_id = Column(Integer, ForeignKey("destinations.id"))
    template_id = Column(Integer, ForeignKey("query_templates.id"))
    filename_template = Column(String(300), default="{profile}_{timestamp}.{format}")

    # Pre/post-processing (JSON ProcessingConfig)
    pre_process_type = Column(String(30))                                # Query, StoredProcedure
    pre_process_config = Column(Text)
    post_process_type = Column(String(30))
    post_process_config = Column(Text)
    post_process_skip_on_failure = Column(Boolean, nullable=False, default=True)
    post_process_rollback_on_failure = Column(Boolean, nullable=False, default=False)
    post_process_on_zero_rows = Column(Boolean, nullable=False, default=False)

    # Email export
    is_email_export = Column(Boolean, nullable=False, default=False)
    email_template_id = Column(Integer, ForeignKey("query_templates.id"))
    email_recipients_column = Column(String(100))
    email_cc_column = Column(String(100))
    email_subject_column = Column(String(100))
    email_subject_hardcoded = Column(String(300))
    email_success_threshold_percent = Column(Integer, nullable=False, default=60)
    email_approval_required = Column(Boolean, nullable=False, default=False)

    # Delta sync
    delta_sync_enabled = Column(Boolean, nullable=False, default=False)
    delta_sync_reef_id_column = Column(String(100))
    delta_sync_track_deletes = Column(Boolean, nullable=False, default=False)
    delta_sync_retention_days = Column(Integer)
    exclude_reef_id_from_output = Column(Boolean, nullable=False, default=True)

    # Multi-output splitting
    split_enabled = Column(Boolean, nullable=False, default=False)
    split_key_column = Column(String(100))
    split_filename_template = Column(String(300), default="{profile}_{splitkey}_{timestamp}.{format}")
    exclude_split_key_from_output = Column(Boolean, nullable=False, default=False)
    post_process_per_split = Column(Boolean, nullable=False, default=False)

    depends_on_profile_ids = Column(String(200))                         # Comma-separated profile ids
    is_enabled = Column(Boolean, nullable=False, default=True)
    last_executed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Profile {self.name} ({self.output_format})>"


class ProfileExecution(Base):
    """One run of a profile through the export pipeline."""
    __tablename__ = "profile_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    profile_id = Column(Integer, nullable=False)
    job_id = Column(Integer)
    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime)
    status = Column(String(20), nullable=False, default=ExecutionStatus.RUNNING)
    triggered_by = Column(String(100))
    row_count = Column(Integer, default=0)
    output_path = Column(Text)
    output_message = Column(Text)
    output_format = Column(String(20))
    execution_time_ms = Column(Integer)
    error_message = Column(Text)

    pre_process_started_at = Column(UTCDateTime)
    pre_process_completed_at = Column(UTCDateTime)
    pre_process_status = Column(String(20))
    pre_process_error = Column(Text)
    pre_process_time_ms = Column(Integer)

    post_process_started_at = Column(UTCDateTime)
    post_process_completed_at = Column(UTCDateTime)
    post_process_status = Column(String(20))
    post_process_error = Column(Text)
    post_process_time_ms = Column(Integer)

    approval_status = Column(String(20))                      # Pending, Approved, Rejected, Sent, Failed

    delta_sync_new_rows = Column(Integer)
    delta_sync_changed_rows = Column(Integer)
    delta_sync_deleted_rows = Column(Integer)
    delta_sync_unchanged_rows = Column(Integer)
    delta_sync_total_hashed_rows = Column(Integer)

    was_split = Column(Boolean, nullable=False, default=False)
    split_count = Column(Integer)
    split_success_count = Column(Integer)
    split_failure_count = Column(Integer)

    splits = relationship("ProfileExecutionSplit", back_populates="execution",
                          cascade="all, delete-orphan", order_by="ProfileExecutionSplit.id")

    __table_args__ = (
        Index("ix_profile_executions_profile_completed", "profile_id", "completed_at"),
    )


class ProfileExecutionSplit(Base):
    """One fan-out unit of a profile execution: one file or one email."""
    __tablename__ = "profile_execution_splits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(Integer, ForeignKey("profile_executions.id", ondelete="CASCADE"), nullable=False)
    split_key = Column(String(300), nullable=False)
    row_count = Column(Integer, default=0)
    status = Column(String(20), nullable=False, default=ExecutionStatus.RUNNING)
    output_path = Column(Text)
    file_size_bytes = Column(Integer)
    error_message = Column(Text)
    started_at = Column(UTCDateTime, default=utcnow)
    completed_at = Column(UTCDateTime)

    execution = relationship("ProfileExecution", back_populates="splits")


# ============================================================================
# Delta Sync & Audit
# ============================================================================

class DeltaSyncState(Base):
    """Last committed content hash per exported row."""
    __tablename__ = "delta_sync_state"

    id = Column(Integer, primary_key=True, autoincrement=True)
    profile_id = Column(Integer, nullable=False)
    reef_id = Column(String(300), nullable=False)
    row_hash = Column(String(64), nullable=False)
    last_seen_execution_id = Column(Integer)
    first_seen_at = Column(UTCDateTime, default=utcnow)
    last_seen_at = Column(UTCDateTime, default=utcnow)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(UTCDateTime)

    __table_args__ = (
        UniqueConstraint("profile_id", "reef_id", name="uq_delta_sync_profile_row"),
    )


class AuditLog(Base):
    """Append-only audit trail."""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer)
    action = Column(String(100), nullable=False)
    actor = Column(String(100))
    details = Column(Text)
    created_at = Column(UTCDateTime, default=utcnow)
