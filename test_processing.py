from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from dataexport.processing import (
    ProcessingContext, ProcessingParameter, build_database_command, build_parameters,
    file_extension, filter_internal_columns, find_column, generate_filename,
    generate_split_filename, normalize_split_key, parse_processing_config,
    render_placeholders, sanitize_filename,
)


def context(**overrides):
    values = dict(execution_id=12, profile_id=3, row_count=250, output_format="CSV", status="Success",
                  started_at=datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc))
    values.update(overrides)
    return ProcessingContext(**values)


# ============================================================================
# Processing configuration
# ============================================================================

def test_parse_processing_config_is_case_insensitive():
    step = parse_processing_config(
        '{"Type": "StoredProcedure", "Command": "usp_mark", "Timeout": 90, "ContinueOnError": true,'
        ' "Parameters": [{"Name": "ExecId", "Value": "{executionId}"}, {"name": "Empty"}]}'
    )
    assert step.type == "StoredProcedure"
    assert step.timeout == 90
    assert step.continue_on_error is True
    assert step.parameters == [ProcessingParameter("ExecId", "{executionId}"), ProcessingParameter("Empty", "")]


@pytest.mark.parametrize("raw", ["not json", "[]", '{"type": "Query"}', '{"type": "Query", "command": "x", '
                                                                      '"parameters": [{"value": 1}]}'])
def test_parse_processing_config_rejects_unusable_json(raw):
    with pytest.raises(ValueError):
        parse_processing_config(raw)


def test_render_placeholders_single_pass():
    # The substituted error message contains a placeholder that must stay literal
    values = {"ErrorMessage": "bad {rowCount}", "rowcount": "7"}
    assert render_placeholders("{errorMessage} / {ROWCOUNT}", values) == "bad {rowCount} / 7"


def test_render_placeholders_unknown_names_become_empty():
    assert render_placeholders("a{nope}b", {}) == "ab"
    assert render_placeholders(None, {}) is None


def test_context_variables_render_timestamps_and_empties():
    variables = context(output_path=None, split_key="EU").variables()
    assert variables["startedat"] == "2024-05-01T08:30:00+00:00"
    assert variables["completedat"] == ""
    assert variables["outputpath"] == ""
    assert variables["splitkey"] == "EU"


@pytest.mark.parametrize("connection_type, expected", [
    ("SqlServer", "EXEC usp_mark @ExecId, @Rows"),
    ("SQLite", "EXEC usp_mark @ExecId, @Rows"),
    ("MySQL", "CALL usp_mark(@ExecId, @Rows)"),
    ("PostgreSQL", "CALL usp_mark(@ExecId, @Rows)"),
])
def test_stored_procedure_syntax_per_dialect(connection_type, expected):
    step = parse_processing_config(
        '{"type": "StoredProcedure", "command": "usp_mark", '
        '"parameters": [{"name": "ExecId", "value": "{executionId}"}, {"name": "@Rows", "value": "{rowCount}"}]}'
    )
    assert build_database_command(connection_type, step, context()) == expected


def test_stored_procedure_without_parameters():
    step = parse_processing_config('{"type": "StoredProcedure", "command": " usp_refresh "}')
    assert build_database_command("SqlServer", step, context()) == "EXEC usp_refresh"


def test_query_command_renders_placeholders():
    step = parse_processing_config('{"type": "Query", "command": "DELETE FROM staging WHERE run = {executionId}"}')
    assert build_database_command("SQLite", step, context()) == "DELETE FROM staging WHERE run = 12"


def test_unknown_processing_type():
    step = parse_processing_config('{"type": "Shell", "command": "rm -rf /"}')
    with pytest.raises(ValueError):
        build_database_command("SQLite", step, context())


def test_build_parameters_prefixes_names_and_renders_values():
    params = [ProcessingParameter("ExecId", "{executionId}"), ProcessingParameter("@Status", "{status}")]
    assert build_parameters(params, context()) == {"@ExecId": "12", "@Status": "Success"}


# ============================================================================
# Filenames & split keys
# ============================================================================

@pytest.mark.parametrize("output_format, extension", [
    ("JSON", "json"), ("csv", "csv"), ("Xml", "xml"), ("YAML", "yaml"), ("HTML", "html"), ("Parquet", "txt"),
    (None, "txt"),
])
def test_file_extension(output_format, extension):
    assert file_extension(output_format) == extension


def test_sanitize_filename_replaces_invalid_runs():
    assert sanitize_filename('EU/West: "A"') == "EU_West_ _A"
    assert sanitize_filename(None) == ""


def test_generate_filename_from_template():
    name = generate_filename("{profile}_{date}.{format}", "Daily Orders", "csv", 9)
    assert name.startswith("Daily Orders_")
    assert name.endswith(".csv")


def test_generate_filename_without_template_is_unique():
    first = generate_filename(None, "Orders", "json", 9)
    second = generate_filename("  ", "Orders", "json", 9)
    assert first.startswith("export_9_") and first.endswith(".json")
    assert first != second


def test_generate_split_filename_sanitizes_the_key():
    assert generate_split_filename("{profile}-{splitkey}.{format}", "Orders", "a/b", "xml") == "Orders-a_b.xml"


@pytest.mark.parametrize("value, key", [
    (None, "_NULL_"),
    ("", "_EMPTY_"),
    ("   ", "_EMPTY_"),
    (" EU ", "EU"),
    (42, "42"),
])
def test_normalize_split_key_keeps_null_and_empty_apart(value, key):
    assert normalize_split_key(value) == key


def test_find_column_case_insensitive():
    row = {"OrderId": 1, "Region": "EU"}
    assert find_column(row, "orderid") == "OrderId"
    assert find_column(row, "Region") == "Region"
    assert find_column(row, "missing") is None


def test_filter_internal_columns():
    profile = SimpleNamespace(
        delta_sync_enabled=True, exclude_reef_id_from_output=True, delta_sync_reef_id_column="ReefId",
        split_enabled=True, exclude_split_key_from_output=True, split_key_column="region",
    )
    rows = [{"reefid": 1, "Region": "EU", "total": 10}]
    assert filter_internal_columns(rows, profile) == [{"total": 10}]

    profile.exclude_reef_id_from_output = False
    profile.split_enabled = False
    assert filter_internal_columns(rows, profile) is rows
