"""
Contracts between the profile pipeline and the systems it drives.

Results are plain dataclasses; collaborators are typing Protocols so tests
and deployments can hand in any object with the right methods.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set, Tuple

Row = Dict[str, Any]


@dataclass
class QueryResult:
    success: bool
    rows: List[Row] = field(default_factory=list)
    error: Optional[str] = None
    elapsed_ms: int = 0


@dataclass
class CommandResult:
    success: bool
    rows_affected: int = 0
    error: Optional[str] = None
    elapsed_ms: int = 0


@dataclass
class FormatResult:
    success: bool
    size_bytes: int = 0
    error: Optional[str] = None


@dataclass
class DeliveryResult:
    success: bool
    location: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None       # e.g. the HTTP response body


@dataclass
class DeltaSyncResult:
    """Outcome of comparing a result set against the stored row hashes."""
    new_rows: List[Row] = field(default_factory=list)
    changed_rows: List[Row] = field(default_factory=list)
    unchanged_rows: List[Row] = field(default_factory=list)
    deleted_reef_ids: List[str] = field(default_factory=list)
    # reef id -> hash of every row that was seen in this run
    new_hashes: Dict[str, str] = field(default_factory=dict)
    total_rows: int = 0

    @property
    def exported_rows(self) -> List[Row]:
        return self.new_rows + self.changed_rows

    def restrict_to(self, reef_ids: Set[str], reef_column: str) -> "DeltaSyncResult":
        """Copy limited to rows whose reef id is in `reef_ids`; only their hashes get committed."""
        keep = {str(r) for r in reef_ids}
        return DeltaSyncResult(
            new_rows=[r for r in self.new_rows if reef_ids_of([r], reef_column) & keep],
            changed_rows=[r for r in self.changed_rows if reef_ids_of([r], reef_column) & keep],
            unchanged_rows=self.unchanged_rows,
            deleted_reef_ids=[r for r in self.deleted_reef_ids if r in keep],
            new_hashes={k: v for k, v in self.new_hashes.items() if k in keep},
            total_rows=self.total_rows,
        )

    @property
    def is_empty(self) -> bool:
        return not (self.new_hashes or self.deleted_reef_ids)


@dataclass
class EmailExportResult:
    success: bool
    message: str = ""
    success_count: int = 0
    failure_count: int = 0
    # One entry per email: split_key, row_count, success, error
    splits: List[Dict[str, Any]] = field(default_factory=list)


class QueryExecutor(Protocol):
    def execute_query(self, connection, sql: str, params: Optional[Dict[str, Any]] = None) -> QueryResult: ...

    def execute_command(self, connection, sql: str, params: Optional[Dict[str, Any]] = None,
                        timeout: int = 30) -> CommandResult: ...


class DeltaSync(Protocol):
    def process_delta(self, profile_id: int, rows: List[Row], profile) -> DeltaSyncResult: ...

    def commit_delta_sync(self, profile_id: int, execution_id: int, result: DeltaSyncResult) -> None: ...

    def cleanup_old_state(self, profile_id: int, retention_days: int) -> int: ...


class DestinationGateway(Protocol):
    def save_to_destination(self, local_path: str, destination_type: str, config: Dict[str, Any],
                            max_retries: int = 3) -> DeliveryResult: ...

    def compensate_export(self, location: str, destination_type: str,
                          config: Dict[str, Any]) -> Tuple[bool, Optional[str]]: ...


class TemplateEngine(Protocol):
    def transform(self, rows: List[Row], template_source: str) -> str: ...


class Formatter(Protocol):
    def format(self, rows: List[Row], output_path: str) -> FormatResult: ...


class EmailExporter(Protocol):
    def export(self, profile, destination, template, rows: List[Row]) -> EmailExportResult: ...

    def render_for_approval(self, profile, template, rows: List[Row]) -> Tuple[List[Dict[str, Any]], List[str]]: ...


class EmailApprovals(Protocol):
    def create_pending_approval(self, profile_id: int, execution_id: int, email: Dict[str, Any]) -> int: ...


class Notifier(Protocol):
    def notify_job_success(self, job_id: int, job_name: str, details: Any = None) -> Any: ...

    def notify_job_failure(self, job_id: int, job_name: str, error: Optional[str] = None) -> Any: ...

    def notify_execution_success(self, profile_id: int, profile_name: str, details: Any = None) -> Any: ...

    def notify_execution_failure(self, profile_id: int, profile_name: str, error: Optional[str] = None) -> Any: ...


class Auditor(Protocol):
    def log(self, entity_type: str, entity_id: Optional[int], action: str,
            actor: Optional[str] = None, details: Optional[str] = None) -> None: ...


def reef_ids_of(rows: Sequence[Row], reef_column: str) -> Set[str]:
    """String reef ids found in `rows` under `reef_column` (case-insensitive)."""
    ids = set()
    wanted = reef_column.lower()
    for row in rows:
        for key, value in row.items():
            if key.lower() == wanted and value is not None:
                ids.add(str(value).strip())
                break
    return ids
