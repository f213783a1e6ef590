import csv
import json
import xml.etree.ElementTree as ET
from datetime import date, datetime
from decimal import Decimal

import pytest
import yaml

from dataexport.formatters import CsvFormatter, JsonFormatter, XmlFormatter, YamlFormatter, get_formatter

ROWS = [
    {"id": 1, "name": "Ada", "amount": Decimal("12.50"), "shipped": date(2024, 5, 1), "flag": True},
    {"id": 2, "name": None, "amount": Decimal("0"), "shipped": datetime(2024, 5, 2, 9, 30), "flag": False},
]


def test_json_formatter(tmp_path):
    path = tmp_path / "out" / "orders.json"
    result = JsonFormatter().format(ROWS, str(path))
    assert result.success
    assert result.size_bytes == path.stat().st_size
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data[0] == {"id": 1, "name": "Ada", "amount": 12.5, "shipped": "2024-05-01", "flag": True}
    assert data[1]["shipped"] == "2024-05-02T09:30:00"


def test_csv_formatter_uses_first_row_columns(tmp_path):
    path = tmp_path / "orders.csv"
    rows = ROWS + [{"id": 3, "extra": "ignored"}]
    assert CsvFormatter().format(rows, str(path)).success
    with open(path, newline="", encoding="utf-8") as f:
        lines = list(csv.reader(f))
    assert lines[0] == ["id", "name", "amount", "shipped", "flag"]
    assert lines[1] == ["1", "Ada", "12.5", "2024-05-01", "true"]
    assert lines[2][1] == ""
    assert lines[3] == ["3", "", "", "", ""]


def test_csv_formatter_empty_rows(tmp_path):
    path = tmp_path / "empty.csv"
    assert CsvFormatter().format([], str(path)).success
    assert path.read_text() == ""


def test_xml_formatter_sanitizes_element_names(tmp_path):
    path = tmp_path / "orders.xml"
    assert XmlFormatter().format([{"order id": 1, "2nd": "x", "total": None}], str(path)).success
    root = ET.parse(path).getroot()
    row = root.find("row")
    assert root.tag == "rows"
    assert row.find("order_id").text == "1"
    assert row.find("_2nd").text == "x"
    assert row.find("total").text is None


def test_xml_formatter_drops_control_characters(tmp_path):
    path = tmp_path / "notes.xml"
    rows = [{"note": "bell\x07 and\x01 tab\tkept", "code": "\x00"}]
    assert XmlFormatter().format(rows, str(path)).success

    row = ET.parse(path).getroot().find("row")
    assert row.find("note").text == "bell and tab\tkept"
    assert row.find("code").text is None


def test_yaml_formatter_keeps_column_order(tmp_path):
    path = tmp_path / "orders.yaml"
    assert YamlFormatter().format(ROWS, str(path)).success
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert list(data[0].keys()) == ["id", "name", "amount", "shipped", "flag"]
    assert data[0]["amount"] == 12.5


def test_formatter_reports_write_errors(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    result = JsonFormatter().format(ROWS, str(blocker / "orders.json"))
    assert result.success is False
    assert result.error


@pytest.mark.parametrize("output_format, formatter_cls", [
    ("json", JsonFormatter), ("CSV", CsvFormatter), ("Xml", XmlFormatter), ("YAML", YamlFormatter),
    ("parquet", JsonFormatter),
])
def test_get_formatter(output_format, formatter_cls):
    assert isinstance(get_formatter(output_format), formatter_cls)
