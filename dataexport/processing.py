"""
Helpers shared by the profile pipeline: pre/post-processing commands,
placeholder rendering, output filenames and split keys.
"""
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from core.timeutil import utcnow

NULL_SPLIT_KEY = "_NULL_"
EMPTY_SPLIT_KEY = "_EMPTY_"
DEFAULT_COMMAND_TIMEOUT = 30

_PLACEHOLDER = re.compile(r"\{([A-Za-z_]+)\}")
_INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]+')
_EXTENSIONS = {"json": "json", "xml": "xml", "csv": "csv", "yaml": "yaml", "html": "html"}


# ============================================================================
# Processing configuration
# ============================================================================

@dataclass
class ProcessingParameter:
    name: str
    value: str = ""


@dataclass
class ProcessingConfig:
    """Pre/post-processing step stored as JSON on the profile."""
    type: str
    command: str
    parameters: List[ProcessingParameter] = field(default_factory=list)
    timeout: int = DEFAULT_COMMAND_TIMEOUT
    continue_on_error: bool = False


def _lookup(data: Dict[str, Any], key: str, default=None):
    for k, v in data.items():
        if k.lower() == key.lower():
            return v
    return default


def parse_processing_config(raw: str) -> ProcessingConfig:
    """Parse the stored JSON. Raises ValueError when it is unusable."""
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValueError(str(e))
    if not isinstance(data, dict):
        raise ValueError("configuration must be a JSON object")

    kind = _lookup(data, "type")
    command = _lookup(data, "command")
    if not kind or not command:
        raise ValueError("'type' and 'command' are required")

    parameters = []
    for item in _lookup(data, "parameters") or []:
        if not isinstance(item, dict) or not _lookup(item, "name"):
            raise ValueError("each parameter needs a 'name'")
        value = _lookup(item, "value")
        parameters.append(ProcessingParameter(name=str(_lookup(item, "name")),
                                              value="" if value is None else str(value)))

    return ProcessingConfig(
        type=str(kind),
        command=str(command),
        parameters=parameters,
        timeout=int(_lookup(data, "timeout", DEFAULT_COMMAND_TIMEOUT) or DEFAULT_COMMAND_TIMEOUT),
        continue_on_error=bool(_lookup(data, "continueOnError", False)),
    )


@dataclass
class ProcessingContext:
    """Values a processing command may reference as {placeholders}."""
    execution_id: int
    profile_id: int
    row_count: int = 0
    output_path: Optional[str] = None
    file_size_bytes: Optional[int] = None
    execution_time_ms: int = 0
    output_format: str = ""
    triggered_by: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    status: str = ""
    error_message: Optional[str] = None
    delta_sync_reef_id_column: Optional[str] = None
    split_key_column: Optional[str] = None
    split_key: Optional[str] = None

    def variables(self) -> Dict[str, str]:
        return {
            "executionid": str(self.execution_id),
            "profileid": str(self.profile_id),
            "rowcount": str(self.row_count),
            "outputpath": self.output_path or "",
            "filesizebytes": str(self.file_size_bytes or 0),
            "executiontimems": str(self.execution_time_ms),
            "outputformat": self.output_format or "",
            "triggeredby": self.triggered_by or "",
            "startedat": self.started_at.isoformat() if self.started_at else "",
            "completedat": self.completed_at.isoformat() if self.completed_at else "",
            "status": self.status or "",
            "errormessage": self.error_message or "",
            "deltasyncreefidcolumn": self.delta_sync_reef_id_column or "",
            "splitkeycolumn": self.split_key_column or "",
            "splitkey": self.split_key or "",
        }


def render_placeholders(template: Optional[str], values: Dict[str, str]) -> Optional[str]:
    """
    Replace {name} tokens (case-insensitive) in one pass.
    Unknown names render as empty strings and substituted text is not rescanned.
    """
    if not template:
        return template
    lowered = {k.lower(): v for k, v in values.items()}
    return _PLACEHOLDER.sub(lambda m: lowered.get(m.group(1).lower(), ""), template)


def build_database_command(connection_type: str, config: ProcessingConfig, context: ProcessingContext) -> str:
    """SQL text for a processing step; stored procedures use the dialect's call syntax."""
    command = render_placeholders(config.command, context.variables())
    kind = config.type.lower()

    if kind == "query":
        return command

    if kind == "storedprocedure":
        procedure = command.strip()
        names = [p.name if p.name.startswith(("@", "p_")) else f"@{p.name}" for p in config.parameters]
        dialect = (connection_type or "").lower()
        if dialect in ("mysql", "postgresql"):
            return f"CALL {procedure}({', '.join(names)})"
        return f"EXEC {procedure} {', '.join(names)}" if names else f"EXEC {procedure}"

    raise ValueError(f"Unknown processing type: {config.type}")


def build_parameters(parameters: Iterable[ProcessingParameter], context: ProcessingContext) -> Dict[str, str]:
    """Parameter map with '@'-prefixed names and rendered values."""
    variables = context.variables()
    result = {}
    for param in parameters:
        name = param.name if param.name.startswith("@") else f"@{param.name}"
        result[name] = render_placeholders(param.value, variables) or ""
    return result


# ============================================================================
# Filenames & split keys
# ============================================================================

def file_extension(output_format: Optional[str]) -> str:
    return _EXTENSIONS.get((output_format or "").lower(), "txt")


def sanitize_filename(name: Optional[str]) -> str:
    parts = [p for p in _INVALID_FILENAME_CHARS.split(name or "") if p]
    return "_".join(parts)


def _filename_values(profile_name: str, extension: str, split_key: Optional[str] = None) -> Dict[str, str]:
    now = utcnow()
    values = {
        "profile": sanitize_filename(profile_name),
        "timestamp": now.strftime("%Y%m%d_%H%M%S"),
        "date": now.strftime("%Y%m%d"),
        "time": now.strftime("%H%M%S"),
        "guid": uuid.uuid4().hex,
        "format": extension.lstrip("."),
    }
    if split_key is not None:
        values["splitkey"] = sanitize_filename(split_key)
    return values


def generate_filename(template: Optional[str], profile_name: str, extension: str, execution_id: int) -> str:
    if not template or not template.strip():
        return f"export_{execution_id}_{uuid.uuid4()}.{extension.lstrip('.')}"
    return render_placeholders(template, _filename_values(profile_name, extension))


def generate_split_filename(template: str, profile_name: str, split_key: str, extension: str) -> str:
    return render_placeholders(template, _filename_values(profile_name, extension, split_key))


def normalize_split_key(value: Any) -> str:
    if value is None:
        return NULL_SPLIT_KEY
    text = str(value).strip()
    return text if text else EMPTY_SPLIT_KEY


def find_column(row: Dict[str, Any], column: str) -> Optional[str]:
    """Actual key in `row` matching `column` case-insensitively."""
    if column in row:
        return column
    wanted = column.lower()
    for key in row:
        if key.lower() == wanted:
            return key
    return None


def filter_internal_columns(rows: List[Dict[str, Any]], profile) -> List[Dict[str, Any]]:
    """Drop the reef id and split key columns from output when the profile asks for it."""
    hidden = set()
    if profile.delta_sync_enabled and profile.exclude_reef_id_from_output and profile.delta_sync_reef_id_column:
        hidden.add(profile.delta_sync_reef_id_column.lower())
    if profile.split_enabled and profile.exclude_split_key_from_output and profile.split_key_column:
        hidden.add(profile.split_key_column.lower())
    if not hidden:
        return rows
    return [{k: v for k, v in row.items() if k.lower() not in hidden} for row in rows]
