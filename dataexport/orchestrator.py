"""
Execution Orchestrator: runs one profile through the export pipeline.

Phases, in order: record creation, validation, pre-processing, main query,
delta sync, then exactly one of the email / split / single-file delivery
branches, post-processing and finalization. Every outcome is written to the
ProfileExecution row; the caller only ever gets a ProfileRunResult back.

Delta-sync hashes are committed only after the rows provably reached their
destination, so a crash between query and delivery re-exports them next time.
"""
import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from core.notifications import NotificationDispatcher
from core.timeutil import utcnow
from dataexport import config
from dataexport.collaborators import DeltaSyncResult, reef_ids_of
from dataexport.database import SessionLocal
from dataexport.formatters import get_formatter
from dataexport.models import (
    Connection, Destination, ExecutionStatus, Profile, ProfileExecution,
    ProfileExecutionSplit, QueryTemplate,
)
from dataexport.processing import (
    ProcessingContext, build_database_command, build_parameters, file_extension,
    filter_internal_columns, find_column, generate_filename, generate_split_filename,
    normalize_split_key, parse_processing_config,
)
from services.audit import AuditService
from services.delta_sync import HashDeltaSync
from services.destinations import DestinationService
from services.query_executor import SqlAlchemyQueryExecutor

logger = logging.getLogger(__name__)

DEFAULT_SPLIT_FILENAME = "{profile}_{splitkey}_{timestamp}.{format}"
DELETED_MARKER = "_ReefDeleted"
DELETED_AT_MARKER = "_ReefDeletedAt"
TIMEOUT_ERROR = "Job timeout reached before the export was delivered"


@dataclass
class ProfileRunResult:
    execution_id: int
    success: bool
    output_path: Optional[str] = None
    error: Optional[str] = None


@dataclass
class _Run:
    """Per-execution state threaded through the phases."""
    execution_id: int
    profile_id: int
    triggered_by: str
    job_id: Optional[int]
    destination_override_id: Optional[int]
    started: float
    started_at: Any
    deadline: Optional[float] = None
    profile: Optional[Profile] = None
    connection: Optional[Connection] = None
    workdir: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    @property
    def profile_name(self) -> str:
        return self.profile.name if self.profile else f"profile {self.profile_id}"

    @property
    def timed_out(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


class _ExportStepFailed(Exception):
    pass


class ExecutionOrchestrator:
    def __init__(self, session_factory=None, query_executor=None, delta_sync=None, destinations=None,
                 template_engine=None, email_exporter=None, email_approvals=None,
                 notifier: Optional[NotificationDispatcher] = None, audit=None,
                 temp_dir: Optional[str] = None, destination_max_retries: Optional[int] = None):
        self.session_factory = session_factory or SessionLocal
        self.query_executor = query_executor or SqlAlchemyQueryExecutor()
        self.delta_sync = delta_sync or HashDeltaSync(self.session_factory)
        self.destinations = destinations or DestinationService()
        self.template_engine = template_engine
        self.email_exporter = email_exporter
        self.email_approvals = email_approvals
        self.notifier = notifier or NotificationDispatcher(max_pending=config.NOTIFICATION_QUEUE_SIZE)
        self.audit = audit or AuditService(self.session_factory)
        self.temp_dir = temp_dir or config.EXPORT_TEMP_DIR
        self.destination_max_retries = (
            destination_max_retries if destination_max_retries is not None else config.DESTINATION_MAX_RETRIES
        )

    # ==================================================================
    # Entry point
    # ==================================================================

    def execute_profile(self, profile_id: int, parameters: Optional[Dict[str, Any]] = None,
                        triggered_by: str = "Manual", job_id: Optional[int] = None,
                        destination_override_id: Optional[int] = None,
                        deadline: Optional[float] = None) -> ProfileRunResult:
        """
        Run one profile end to end. `deadline` is a time.monotonic() value; once it
        passes the run fails at the next phase boundary without delivering anything.
        """
        run = None
        try:
            execution_id = self._create_record(profile_id, triggered_by, job_id)
            run = _Run(execution_id, profile_id, triggered_by, job_id, destination_override_id,
                       time.monotonic(), utcnow(), deadline)
            try:
                return self._run(run, parameters or {})
            finally:
                self._cleanup_workdir(run)
        except Exception as e:
            logger.exception(f"[PIPELINE] Unexpected error executing profile {profile_id}: {e}")
            if run is None:
                return ProfileRunResult(0, False, None, str(e))
            self._finish(run, ExecutionStatus.FAILED, error=str(e))
            self.notifier.notify_execution_failure(profile_id, run.profile_name, str(e))
            return ProfileRunResult(run.execution_id, False, None, str(e))

    def _run(self, run: _Run, parameters: Dict[str, Any]) -> ProfileRunResult:
        # ---- Validation ----
        profile = self._load(Profile, run.profile_id)
        if profile is None:
            return self._fail(run, "Profile not found")
        run.profile = profile
        if not profile.is_enabled:
            return self._fail(run, "Profile is disabled")

        connection = self._load(Connection, profile.connection_id)
        if connection is None:
            return self._fail(run, "Connection not found")
        if not connection.is_active:
            return self._fail(run, "Connection is inactive")
        run.connection = connection

        if profile.depends_on_profile_ids and not self.validate_profile_dependencies(profile.depends_on_profile_ids):
            return self._fail(run, "Profile dependencies not satisfied")

        logger.info("[PIPELINE] Execution %s: profile '%s' triggered by %s",
                    run.execution_id, profile.name, run.triggered_by)

        # ---- Pre-processing ----
        ok, error = self._run_processing("pre", run, self._context(run, status=ExecutionStatus.RUNNING))
        if not ok:
            return self._fail(run, f"Pre-processing failed: {error}")

        if run.timed_out:
            return self._fail(run, TIMEOUT_ERROR)

        # ---- Main query ----
        query = self.query_executor.execute_query(connection, profile.query, parameters)
        if not query.success:
            return self._fail(run, query.error or "Query failed")
        rows = query.rows
        if run.timed_out:
            return self._fail(run, TIMEOUT_ERROR, row_count=len(rows))

        # ---- Delta sync ----
        delta = None
        if profile.delta_sync_enabled:
            reef_column = profile.delta_sync_reef_id_column
            if rows and (not reef_column or find_column(rows[0], reef_column) is None):
                return self._fail(
                    run, f"Delta sync failed: ReefId column '{reef_column}' not found in query results",
                    row_count=len(rows),
                )
            try:
                delta = self.delta_sync.process_delta(profile.id, rows, profile)
                exported = delta.exported_rows
                if profile.delta_sync_track_deletes:
                    deleted_at = utcnow()
                    for reef_id in delta.deleted_reef_ids:
                        exported.append({reef_column: reef_id, DELETED_MARKER: True, DELETED_AT_MARKER: deleted_at})
                original_count = len(rows)
                rows = exported
                logger.info("[PIPELINE] Delta sync reduced %d rows to %d for export", original_count, len(rows))
                if profile.delta_sync_retention_days:
                    self.delta_sync.cleanup_old_state(profile.id, profile.delta_sync_retention_days)
            except Exception as e:
                logger.error(f"[PIPELINE] Delta sync failed for profile {profile.id}: {e}")
                return self._fail(run, f"Delta sync error: {e}", row_count=len(rows))

        if run.timed_out:
            return self._fail(run, TIMEOUT_ERROR, row_count=len(rows))

        if not rows:
            return self._finish_zero_rows(run, delta)

        if profile.is_email_export and run.destination_override_id is None:
            return self._run_email(run, rows, delta)

        if profile.split_enabled:
            return self._run_split_export(run, rows, delta)

        return self._run_single_export(run, rows, delta)

    # ==================================================================
    # Branches
    # ==================================================================

    def _finish_zero_rows(self, run: _Run, delta: Optional[DeltaSyncResult]) -> ProfileRunResult:
        profile = run.profile
        message = "No changes detected by smart sync" if profile.delta_sync_enabled else "Query returned no rows"

        if profile.post_process_on_zero_rows and profile.post_process_type:
            context = self._context(run, status=ExecutionStatus.SUCCESS, completed=True)
            ok, error = self._run_processing("post", run, context)
            if not ok:
                logger.warning(f"[PIPELINE] Post-processing failed on zero rows: {error}")

        if delta is not None:
            self._commit_delta(run, delta)
        self._finish(run, ExecutionStatus.SUCCESS, row_count=0, message=message)
        if delta is not None:
            self._update_delta_metrics(run.execution_id, delta)
        self._touch_profile(run.profile_id)
        self.audit.log("Profile", run.profile_id, "Executed", run.triggered_by,
                       {"rowCount": 0, "message": message, "executionTimeMs": run.elapsed_ms})
        self.notifier.notify_execution_success(run.profile_id, profile.name, {"rowCount": 0, "message": message})
        return ProfileRunResult(run.execution_id, True)

    def _run_email(self, run: _Run, rows: List[Dict[str, Any]], delta: Optional[DeltaSyncResult]) -> ProfileRunResult:
        profile = run.profile
        if not profile.email_template_id:
            return self._fail(run, "Email export configured but email_template_id not set", row_count=len(rows))
        template = self._load(QueryTemplate, profile.email_template_id)
        if template is None:
            return self._fail(run, f"Email template {profile.email_template_id} not found", row_count=len(rows))
        if not profile.output_destination_id:
            return self._fail(run, "Email export configured but output_destination_id (email destination) not set",
                              row_count=len(rows))
        destination = self._load(Destination, profile.output_destination_id)
        if destination is None or (destination.type or "").lower() != "email":
            return self._fail(run, f"Email destination {profile.output_destination_id} not found or not type Email",
                              row_count=len(rows))
        if self.email_exporter is None:
            return self._fail(run, "Email export is not configured", row_count=len(rows))

        if profile.email_approval_required:
            return self._store_for_approval(run, template, rows)

        try:
            result = self.email_exporter.export(profile, destination, template, rows)
            total = result.success_count + result.failure_count
            self._update_split_summary(run, total, result.success_count, result.failure_count,
                                       len(rows), output_format="HTML")
            if result.splits:
                self._insert_splits(run.execution_id, result.splits)

            meets_threshold = total > 0 and (result.success_count * 100 // total) >= profile.email_success_threshold_percent
            if meets_threshold and not result.success:
                logger.info("[PIPELINE] Email export meets success threshold: %d%% >= %d%%",
                            result.success_count * 100 // total, profile.email_success_threshold_percent)
            if not (result.success or meets_threshold):
                logger.error(f"[PIPELINE] Email export failed for profile {profile.id}: {result.message}")
                self.notifier.notify_execution_failure(profile.id, profile.name, result.message)
                return ProfileRunResult(run.execution_id, False, None, result.message)

            self._touch_profile(profile.id)
            if delta is not None and result.splits:
                delivered = self._rows_of_successful_splits(rows, result.splits)
                restricted = delta.restrict_to(reef_ids_of(delivered, profile.delta_sync_reef_id_column),
                                               profile.delta_sync_reef_id_column)
                if not restricted.is_empty:
                    self._commit_delta(run, restricted)
                    self._update_delta_metrics(run.execution_id, restricted)
                    logger.info("[PIPELINE] Delta sync committed for %d delivered rows", len(restricted.new_hashes))

            self.audit.log("Profile", profile.id, "Executed", run.triggered_by,
                           {"rowCount": len(rows), "emailsSent": result.message, "executionTimeMs": run.elapsed_ms})
            self.notifier.notify_execution_success(profile.id, profile.name, {"emails": result.message})
            return ProfileRunResult(run.execution_id, True)
        except Exception as e:
            logger.exception(f"[PIPELINE] Email export failed for profile {profile.id}: {e}")
            error = f"Email export error: {e}"
            self._update_split_summary(run, 0, 0, 1, len(rows), output_format="HTML", error=error)
            self.notifier.notify_execution_failure(profile.id, profile.name, error)
            return ProfileRunResult(run.execution_id, False, None, error)

    def _store_for_approval(self, run: _Run, template, rows) -> ProfileRunResult:
        profile = run.profile
        if self.email_approvals is None:
            return self._fail(run, "Email approval is not configured", row_count=len(rows))
        try:
            rendered, render_errors = self.email_exporter.render_for_approval(profile, template, rows)
            if render_errors:
                logger.warning("[PIPELINE] Errors rendering emails for profile %s: %s",
                               profile.id, "; ".join(render_errors))
            count = 0
            for email in rendered:
                approval_id = self.email_approvals.create_pending_approval(profile.id, run.execution_id, email)
                count += 1
                logger.debug("[PIPELINE] Created pending approval %s for execution %s", approval_id, run.execution_id)
        except Exception as e:
            logger.error(f"[PIPELINE] Failed to create pending approvals for profile {profile.id}: {e}")
            return self._fail(run, f"Failed to store emails for approval: {e}", row_count=len(rows), returned=str(e))

        message = f"{count} emails pending approval"
        self._finish(run, ExecutionStatus.SUCCESS, row_count=len(rows), message=message, approval_status="Pending")
        self._touch_profile(profile.id)
        self.audit.log("Profile", profile.id, "ExecutedPendingApproval", run.triggered_by,
                       {"rowCount": len(rows), "pendingApprovals": count})
        self.notifier.notify_execution_success(profile.id, profile.name, {"message": message})
        return ProfileRunResult(run.execution_id, True)

    @staticmethod
    def _rows_of_successful_splits(rows, splits) -> List[Dict[str, Any]]:
        """Emails are sent in row order, so split row counts map back onto row indices."""
        delivered = []
        index = 0
        for split in splits:
            count = int(split.get("row_count") or 0)
            if _split_succeeded(split):
                delivered.extend(rows[index:index + count])
            index += count
        return delivered

    def _run_split_export(self, run: _Run, rows, delta) -> ProfileRunResult:
        profile = run.profile
        result = self._run_splits(run, rows, delta)

        if not profile.post_process_per_split:
            context = self._context(
                run, row_count=len(rows), output_path=result.output_path,
                status=ExecutionStatus.SUCCESS if result.success else ExecutionStatus.FAILED,
                error_message=result.error, completed=True,
            )
            ok, error = self._run_processing("post", run, context, main_query_failed=not result.success)
            if not ok and profile.post_process_rollback_on_failure:
                error = f"Post-processing failed: {error}"
                self._finish(run, ExecutionStatus.FAILED, row_count=len(rows), output_path=result.output_path,
                             error=error)
                self.notifier.notify_execution_failure(profile.id, profile.name, error)
                return ProfileRunResult(run.execution_id, False, result.output_path, error)
            if not ok:
                logger.warning(f"[PIPELINE] Post-processing failed after splits: {error}")

        if result.success:
            self.notifier.notify_execution_success(profile.id, profile.name, {"rowCount": len(rows), "split": True})
        else:
            self.notifier.notify_execution_failure(profile.id, profile.name, result.error)
        return result

    def _run_splits(self, run: _Run, rows, delta) -> ProfileRunResult:
        profile = run.profile
        column = find_column(rows[0], profile.split_key_column) if profile.split_key_column else None
        if column is None:
            error = (f"Split key column '{profile.split_key_column}' not found in query results. "
                     f"Available columns: {', '.join(rows[0].keys())}")
            self._finish(run, ExecutionStatus.FAILED, row_count=len(rows), error=error)
            return ProfileRunResult(run.execution_id, False, None, error)

        groups: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            groups.setdefault(normalize_split_key(row.get(column)), []).append(row)
        logger.info("[PIPELINE] Splitting %d rows into %d groups by '%s'", len(rows), len(groups), column)

        destination_id = run.destination_override_id or profile.output_destination_id
        destination = self._load(Destination, destination_id) if destination_id else None
        if destination is None:
            error = "Destination not found"
            self._finish(run, ExecutionStatus.FAILED, row_count=len(rows), error=error)
            return ProfileRunResult(run.execution_id, False, None, error)
        if not destination.is_active:
            error = f"Destination {destination.name} is not active"
            self._finish(run, ExecutionStatus.FAILED, row_count=len(rows), error=error)
            return ProfileRunResult(run.execution_id, False, None, error)
        destination_config = _parse_json(destination.configuration_json)

        template = self._load(QueryTemplate, profile.template_id) if profile.template_id else None
        successes = 0
        errors = []
        for split_key, split_rows in groups.items():
            if run.timed_out:
                errors.append(f"{split_key}: {TIMEOUT_ERROR}")
                continue
            ok, error = self._process_split(run, split_key, split_rows, destination.type, destination_config, template)
            if ok:
                successes += 1
            else:
                errors.append(f"{split_key}: {error}")

        failures = len(errors)
        error = f"{failures} of {len(groups)} splits failed: {'; '.join(errors[:3])}" if failures else None
        self._update_split_summary(run, len(groups), successes, failures, len(rows), error=error)
        logger.info("[PIPELINE] Split execution %s: %d/%d splits succeeded",
                    run.execution_id, successes, len(groups))

        if delta is not None and failures == 0:
            self._commit_delta(run, delta)
            self._update_delta_metrics(run.execution_id, delta)

        self._touch_profile(profile.id)
        self.audit.log("Profile", profile.id, "ExecutedWithSplitting", run.triggered_by, {
            "splitCount": len(groups),
            "successCount": successes,
            "failureCount": failures,
            "totalRows": len(rows),
            "executionTimeMs": run.elapsed_ms,
        })
        return ProfileRunResult(run.execution_id, failures == 0, None, error)

    def _process_split(self, run: _Run, split_key: str, split_rows, destination_type: str,
                       destination_config: Dict[str, Any], template) -> Tuple[bool, Optional[str]]:
        """Format, deliver and record one split. A failure here never stops the other splits."""
        profile = run.profile
        split_id = self._record_split_start(run.execution_id, split_key, len(split_rows))
        temp_path = None
        try:
            output_rows = filter_internal_columns(split_rows, profile)
            output_format = profile.output_format
            content = None
            if template is not None:
                content = self._transform(output_rows, template)
                output_format = template.output_format or output_format
            extension = file_extension(output_format)
            filename = generate_split_filename(profile.split_filename_template or DEFAULT_SPLIT_FILENAME,
                                               profile.name, split_key, extension)
            temp_path = os.path.join(self._workdir(run), filename)
            size = self._write_output(output_rows, temp_path, output_format, content)

            delivery = self.destinations.save_to_destination(temp_path, destination_type, destination_config,
                                                             self.destination_max_retries)
            if not delivery.success:
                raise _ExportStepFailed(f"Upload failed: {delivery.error}")
            self._record_split_end(split_id, ExecutionStatus.SUCCESS, delivery.location, size)

            if profile.post_process_per_split:
                context = self._context(run, row_count=len(split_rows), output_path=delivery.location,
                                        file_size_bytes=size, status=ExecutionStatus.SUCCESS,
                                        split_key=split_key, completed=True)
                ok, error = self._run_processing("post", run, context)
                if not ok:
                    logger.warning(f"[PIPELINE] Post-processing for split '{split_key}' failed: {error}")
            return True, None
        except Exception as e:
            logger.error(f"[PIPELINE] Split '{split_key}' of execution {run.execution_id} failed: {e}")
            self._record_split_end(split_id, ExecutionStatus.FAILED, error=str(e))
            return False, str(e)
        finally:
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)

    def _run_single_export(self, run: _Run, rows, delta) -> ProfileRunResult:
        profile = run.profile
        override = run.destination_override_id
        output_rows = filter_internal_columns(rows, profile)

        # Email profiles run against an override render their email template to HTML files
        email_test_mode = profile.is_email_export and override is not None
        template_id = profile.email_template_id if email_test_mode else profile.template_id
        output_format = "HTML" if email_test_mode else profile.output_format

        content = None
        if template_id:
            template = self._load(QueryTemplate, template_id)
            if template is None:
                return self._fail(run, f"Template {template_id} not found", row_count=len(rows))
            try:
                content = self._transform(output_rows, template)
            except Exception as e:
                logger.error(f"[PIPELINE] Template transformation failed: {e}")
                return self._fail(run, f"Template transformation error: {e}", row_count=len(rows))
            if not email_test_mode:
                output_format = template.output_format or output_format

        extension = file_extension(output_format)
        filename = generate_filename(profile.filename_template, profile.name, extension, run.execution_id)
        temp_path = os.path.join(self._workdir(run), *filename.replace("\\", "/").split("/"))
        try:
            size = self._write_output(output_rows, temp_path, output_format, content)
        except _ExportStepFailed as e:
            return self._fail(run, str(e), row_count=len(rows))

        # Job override > profile destination > inline profile configuration
        if override is not None:
            destination = self._load(Destination, override)
            if destination is None:
                return self._fail(run, f"Destination override {override} not found", row_count=len(rows))
        elif profile.output_destination_id:
            destination = self._load(Destination, profile.output_destination_id)
            if destination is None:
                return self._fail(run, f"Profile destination {profile.output_destination_id} not found",
                                  row_count=len(rows))
        else:
            destination = None

        if destination is not None:
            if not destination.is_active:
                return self._fail(run, f"Destination {destination.name} is not active", row_count=len(rows))
            destination_type = destination.type
            raw_config = destination.configuration_json
        else:
            destination_type = profile.output_destination_type or "Local"
            raw_config = profile.output_destination_config
            if not raw_config:
                now = utcnow()
                raw_config = json.dumps({
                    "path": f"exports/{now:%Y-%m-%d}/{now:%H%M%S}/{profile.name.replace(' ', '_')}.{extension}"
                })
        try:
            destination_config = json.loads(raw_config) if raw_config else {}
        except json.JSONDecodeError as e:
            return self._fail(run, f"Invalid destination configuration: {e}", row_count=len(rows))

        if run.timed_out:
            return self._fail(run, TIMEOUT_ERROR, row_count=len(rows))

        delivery = self.destinations.save_to_destination(temp_path, destination_type, destination_config,
                                                         self.destination_max_retries)
        if not delivery.success:
            logger.error(f"[PIPELINE] Destination upload failed after retries: {delivery.error}")
            return self._fail(run, f"Destination upload failed: {delivery.error}", row_count=len(rows))

        is_http = (destination_type or "").lower() == "http"
        output_message = (delivery.message or delivery.location) if is_http else None
        stored_path = None if is_http else delivery.location

        # ---- Post-processing ----
        context = self._context(run, row_count=len(rows), output_path=delivery.location, file_size_bytes=size,
                                output_format=output_format, status=ExecutionStatus.SUCCESS, completed=True)
        ok, error = self._run_processing("post", run, context)
        if not ok and profile.post_process_rollback_on_failure:
            logger.error(f"[PIPELINE] Post-processing failed with rollback enabled: {error}")
            if delivery.location:
                compensated, compensation_error = self.destinations.compensate_export(
                    delivery.location, destination_type, destination_config)
                if compensated:
                    logger.info("[PIPELINE] Compensation removed %s", delivery.location)
                else:
                    logger.warning(f"[PIPELINE] Compensation failed (non-critical): {compensation_error}. "
                                   f"Exported file may still exist at {delivery.location}")
            self._finish(run, ExecutionStatus.FAILED, row_count=len(rows), output_path=stored_path,
                         error=f"Post-processing failed (compensation attempted): {error}",
                         output_format=output_format)
            self.notifier.notify_execution_failure(profile.id, profile.name, f"Post-processing failed: {error}")
            return ProfileRunResult(run.execution_id, False, delivery.location, f"Post-processing failed: {error}")
        if not ok:
            logger.warning(f"[PIPELINE] Post-processing failed but continuing: {error}")

        if delta is not None:
            self._commit_delta(run, delta)

        self._finish(run, ExecutionStatus.SUCCESS, row_count=len(rows), output_path=stored_path,
                     message=output_message, output_format=output_format)
        if delta is not None:
            self._update_delta_metrics(run.execution_id, delta)
        self._touch_profile(profile.id)
        self.audit.log("Profile", profile.id, "Executed", run.triggered_by,
                       {"rowCount": len(rows), "outputPath": delivery.location, "executionTimeMs": run.elapsed_ms})
        self.notifier.notify_execution_success(profile.id, profile.name,
                                               {"rowCount": len(rows), "outputPath": delivery.location})
        logger.info("[PIPELINE] Execution %s delivered %d rows to %s",
                    run.execution_id, len(rows), delivery.location)
        return ProfileRunResult(run.execution_id, True, delivery.location)

    # ==================================================================
    # Processing steps & output
    # ==================================================================

    def _run_processing(self, phase: str, run: _Run, context: ProcessingContext,
                        main_query_failed: bool = False) -> Tuple[bool, Optional[str]]:
        """Run the pre- or post-processing command. Returns (may_continue, error)."""
        profile = run.profile
        kind = getattr(profile, f"{phase}_process_type")
        raw_config = getattr(profile, f"{phase}_process_config")
        if not kind or not raw_config:
            return True, None

        if phase == "post" and main_query_failed and profile.post_process_skip_on_failure:
            now = utcnow()
            self._update_phase(run.execution_id, phase, ExecutionStatus.SKIPPED, now, now,
                               "Skipped due to main query failure", 0)
            return True, None

        label = "pre-processing" if phase == "pre" else "post-processing"
        started_at = utcnow()
        started = time.monotonic()
        self._update_phase(run.execution_id, phase, ExecutionStatus.RUNNING, started_at)

        def elapsed():
            return int((time.monotonic() - started) * 1000)

        try:
            step = parse_processing_config(raw_config)
        except ValueError as e:
            error = f"Invalid {label} configuration: {e}"
            logger.error(f"[PIPELINE] {error}")
            self._update_phase(run.execution_id, phase, ExecutionStatus.FAILED, started_at, utcnow(), error, elapsed())
            return False, error

        try:
            command = build_database_command(run.connection.type, step, context)
            params = build_parameters(step.parameters, context)
            logger.debug("[PIPELINE] Executing %s command: %s", label, command)
            result = self.query_executor.execute_command(run.connection, command, params, step.timeout)
        except Exception as e:
            error = f"{label.capitalize()} exception: {e}"
            logger.error(f"[PIPELINE] {error}")
            self._update_phase(run.execution_id, phase, ExecutionStatus.FAILED, started_at, utcnow(), error, elapsed())
            return False, error

        if result.success:
            self._update_phase(run.execution_id, phase, ExecutionStatus.SUCCESS, started_at, utcnow(), None, elapsed())
            return True, None

        logger.warning(f"[PIPELINE] {label.capitalize()} failed: {result.error}")
        self._update_phase(run.execution_id, phase, ExecutionStatus.FAILED, started_at, utcnow(),
                           result.error, elapsed())
        if step.continue_on_error:
            logger.info("[PIPELINE] Continuing despite %s error (continueOnError)", label)
            return True, None
        return False, result.error

    def _context(self, run: _Run, completed: bool = False, **values) -> ProcessingContext:
        profile = run.profile
        context = ProcessingContext(
            execution_id=run.execution_id,
            profile_id=run.profile_id,
            execution_time_ms=run.elapsed_ms,
            output_format=profile.output_format,
            triggered_by=run.triggered_by,
            started_at=run.started_at,
            completed_at=utcnow() if completed else None,
            delta_sync_reef_id_column=profile.delta_sync_reef_id_column,
            split_key_column=profile.split_key_column,
        )
        for key, value in values.items():
            setattr(context, key, value)
        return context

    def _transform(self, rows, template) -> str:
        if self.template_engine is None:
            raise RuntimeError("no template engine configured")
        return self.template_engine.transform(rows, template.template)

    @staticmethod
    def _write_output(rows, path: str, output_format: str, content: Optional[str]) -> int:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        if content is not None:
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)
            return os.path.getsize(path)
        result = get_formatter(output_format).format(rows, path)
        if not result.success:
            raise _ExportStepFailed(result.error or "Formatting failed")
        return result.size_bytes

    def _workdir(self, run: _Run) -> str:
        if run.workdir is None:
            os.makedirs(self.temp_dir, exist_ok=True)
            run.workdir = tempfile.mkdtemp(prefix=f"exec_{run.execution_id}_", dir=self.temp_dir)
        return run.workdir

    @staticmethod
    def _cleanup_workdir(run: _Run):
        if run.workdir and os.path.isdir(run.workdir):
            try:
                shutil.rmtree(run.workdir)
            except OSError as e:
                logger.warning(f"[PIPELINE] Failed to delete temporary files in {run.workdir}: {e}")

    def _commit_delta(self, run: _Run, delta: DeltaSyncResult):
        try:
            self.delta_sync.commit_delta_sync(run.profile_id, run.execution_id, delta)
        except Exception as e:
            # Data already reached the destination; the next run re-exports these rows
            logger.error(f"[PIPELINE] Failed to commit delta sync state for execution {run.execution_id}: {e}")

    # ==================================================================
    # Dependencies
    # ==================================================================

    def validate_profile_dependencies(self, depends_on: str) -> bool:
        """Every listed profile's most recent completed execution must be Success."""
        try:
            ids = [int(part) for part in depends_on.split(",") if part.strip()]
        except ValueError:
            logger.warning("[PIPELINE] Ignoring malformed profile dependency list '%s'", depends_on)
            return True

        session = self.session_factory()
        try:
            for profile_id in ids:
                latest = session.query(ProfileExecution).filter(
                    ProfileExecution.profile_id == profile_id,
                    ProfileExecution.completed_at.isnot(None),
                ).order_by(ProfileExecution.completed_at.desc()).first()
                if latest is None or latest.status != ExecutionStatus.SUCCESS:
                    logger.info("[PIPELINE] Dependency profile %s has not succeeded", profile_id)
                    return False
            return True
        finally:
            session.close()

    # ==================================================================
    # Execution records
    # ==================================================================

    def _load(self, model, entity_id):
        session = self.session_factory()
        try:
            return session.get(model, entity_id)
        finally:
            session.close()

    def _create_record(self, profile_id: int, triggered_by: str, job_id: Optional[int]) -> int:
        session = self.session_factory()
        try:
            execution = ProfileExecution(
                profile_id=profile_id,
                job_id=job_id,
                triggered_by=triggered_by,
                started_at=utcnow(),
                status=ExecutionStatus.RUNNING,
            )
            session.add(execution)
            session.commit()
            return execution.id
        finally:
            session.close()

    def _update_record(self, execution_id: int, **values):
        session = self.session_factory()
        try:
            execution = session.get(ProfileExecution, execution_id)
            if execution is None:
                logger.error("[PIPELINE] Profile execution %s vanished", execution_id)
                return
            for key, value in values.items():
                setattr(execution, key, value)
            session.commit()
        finally:
            session.close()

    def _finish(self, run: _Run, status: str, row_count: int = 0, output_path: Optional[str] = None,
                error: Optional[str] = None, message: Optional[str] = None,
                output_format: Optional[str] = None, **extra):
        self._update_record(
            run.execution_id,
            status=status,
            row_count=row_count,
            output_path=output_path,
            error_message=error,
            output_message=message,
            output_format=output_format or (run.profile.output_format if run.profile else None),
            execution_time_ms=run.elapsed_ms,
            completed_at=utcnow(),
            **extra,
        )

    def _fail(self, run: _Run, error: str, row_count: int = 0, returned: Optional[str] = None) -> ProfileRunResult:
        logger.warning("[PIPELINE] Execution %s failed: %s", run.execution_id, error)
        self._finish(run, ExecutionStatus.FAILED, row_count=row_count, error=error)
        self.notifier.notify_execution_failure(run.profile_id, run.profile_name, error)
        return ProfileRunResult(run.execution_id, False, None, returned or error)

    def _update_phase(self, execution_id: int, phase: str, status: str, started_at=None,
                      completed_at=None, error: Optional[str] = None, time_ms: Optional[int] = None):
        self._update_record(execution_id, **{
            f"{phase}_process_status": status,
            f"{phase}_process_started_at": started_at,
            f"{phase}_process_completed_at": completed_at,
            f"{phase}_process_error": error,
            f"{phase}_process_time_ms": time_ms,
        })

    def _update_split_summary(self, run: _Run, split_count: int, success_count: int, failure_count: int,
                              row_count: int, output_format: Optional[str] = None, error: Optional[str] = None):
        if failure_count == 0:
            status = ExecutionStatus.SUCCESS
        elif success_count == 0:
            status = ExecutionStatus.FAILED
        else:
            status = ExecutionStatus.PARTIAL
        if error is None and failure_count:
            error = f"{failure_count} of {split_count} splits failed"
        self._finish(run, status, row_count=row_count, error=error, output_format=output_format,
                     was_split=True, split_count=split_count, split_success_count=success_count,
                     split_failure_count=failure_count)

    def _record_split_start(self, execution_id: int, split_key: str, row_count: int) -> int:
        session = self.session_factory()
        try:
            split = ProfileExecutionSplit(
                execution_id=execution_id,
                split_key=split_key,
                row_count=row_count,
                status=ExecutionStatus.RUNNING,
                started_at=utcnow(),
            )
            session.add(split)
            session.commit()
            return split.id
        finally:
            session.close()

    def _record_split_end(self, split_id: int, status: str, output_path: Optional[str] = None,
                          size: Optional[int] = None, error: Optional[str] = None):
        session = self.session_factory()
        try:
            split = session.get(ProfileExecutionSplit, split_id)
            split.status = status
            split.output_path = output_path
            split.file_size_bytes = size
            split.error_message = error
            split.completed_at = utcnow()
            session.commit()
        finally:
            session.close()

    def _insert_splits(self, execution_id: int, splits: List[Dict[str, Any]]):
        now = utcnow()
        session = self.session_factory()
        try:
            for split in splits:
                session.add(ProfileExecutionSplit(
                    execution_id=execution_id,
                    split_key=str(split.get("split_key") or ""),
                    row_count=int(split.get("row_count") or 0),
                    status=ExecutionStatus.SUCCESS if _split_succeeded(split) else ExecutionStatus.FAILED,
                    output_path=split.get("output_path"),
                    error_message=split.get("error"),
                    started_at=now,
                    completed_at=now,
                ))
            session.commit()
        finally:
            session.close()

    def _update_delta_metrics(self, execution_id: int, delta: DeltaSyncResult):
        self._update_record(
            execution_id,
            delta_sync_new_rows=len(delta.new_rows),
            delta_sync_changed_rows=len(delta.changed_rows),
            delta_sync_deleted_rows=len(delta.deleted_reef_ids),
            delta_sync_unchanged_rows=len(delta.unchanged_rows),
            delta_sync_total_hashed_rows=len(delta.new_hashes),
        )

    def _touch_profile(self, profile_id: int):
        session = self.session_factory()
        try:
            profile = session.get(Profile, profile_id)
            if profile is not None:
                profile.last_executed_at = utcnow()
                session.commit()
        finally:
            session.close()


def _split_succeeded(split: Dict[str, Any]) -> bool:
    if "success" in split:
        return bool(split["success"])
    return str(split.get("status", "")).lower() == "success"


def _parse_json(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid destination configuration: {e}")
    return value if isinstance(value, dict) else {}
