"""
Serializers that write query rows to an output file.
"""
import csv
import json
import logging
import os
import re
import xml.etree.ElementTree as ET
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List

import yaml

from dataexport.collaborators import FormatResult

logger = logging.getLogger(__name__)

_XML_NAME_INVALID = re.compile(r"[^A-Za-z0-9_.-]")
# Characters XML 1.0 cannot carry, even as character references
_XML_TEXT_INVALID = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


def _plain(value: Any) -> Any:
    """Convert driver types (datetimes, decimals, bytes) into JSON/YAML friendly values."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        return value.hex()
    return value


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(_plain(value))


def _ensure_parent(output_path: str):
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)


class JsonFormatter:
    def format(self, rows: List[Dict[str, Any]], output_path: str) -> FormatResult:
        try:
            _ensure_parent(output_path)
            with open(output_path, "w", encoding="utf-8") as f:
                json.dump([{k: _plain(v) for k, v in row.items()} for row in rows],
                          f, indent=2, ensure_ascii=False, default=str)
            return FormatResult(True, os.path.getsize(output_path))
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"[PIPELINE] JSON formatting failed: {e}")
            return FormatResult(False, 0, str(e))


class CsvFormatter:
    """Header from the first row's columns; missing values are empty."""

    def format(self, rows: List[Dict[str, Any]], output_path: str) -> FormatResult:
        try:
            _ensure_parent(output_path)
            headers = list(rows[0].keys()) if rows else []
            with open(output_path, "w", encoding="utf-8", newline="") as f:
                writer = csv.writer(f)
                if headers:
                    writer.writerow(headers)
                for row in rows:
                    writer.writerow([_text(row.get(h)) for h in headers])
            return FormatResult(True, os.path.getsize(output_path))
        except (OSError, csv.Error) as e:
            logger.error(f"[PIPELINE] CSV formatting failed: {e}")
            return FormatResult(False, 0, str(e))


class XmlFormatter:
    """<rows><row><column>value</column></row></rows>"""

    @staticmethod
    def _element_name(column: str) -> str:
        name = _XML_NAME_INVALID.sub("_", column.strip()) or "column"
        if not (name[0].isalpha() or name[0] == "_"):
            name = f"_{name}"
        return name

    def format(self, rows: List[Dict[str, Any]], output_path: str) -> FormatResult:
        try:
            _ensure_parent(output_path)
            root = ET.Element("rows")
            for row in rows:
                row_el = ET.SubElement(root, "row")
                for column, value in row.items():
                    ET.SubElement(row_el, self._element_name(column)).text = _XML_TEXT_INVALID.sub("", _text(value))
            ET.indent(root)
            ET.ElementTree(root).write(output_path, encoding="utf-8", xml_declaration=True)
            return FormatResult(True, os.path.getsize(output_path))
        except (OSError, ValueError) as e:
            logger.error(f"[PIPELINE] XML formatting failed: {e}")
            return FormatResult(False, 0, str(e))


class YamlFormatter:
    def format(self, rows: List[Dict[str, Any]], output_path: str) -> FormatResult:
        try:
            _ensure_parent(output_path)
            with open(output_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(
                    [{k: _plain(v) for k, v in row.items()} for row in rows],
                    f,
                    allow_unicode=True,
                    default_flow_style=False,
                    sort_keys=False,
                )
            return FormatResult(True, os.path.getsize(output_path))
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"[PIPELINE] YAML formatting failed: {e}")
            return FormatResult(False, 0, str(e))


FORMATTERS = {
    "json": JsonFormatter,
    "csv": CsvFormatter,
    "xml": XmlFormatter,
    "yaml": YamlFormatter,
}


def get_formatter(output_format: str):
    """Formatter for `output_format`; unknown formats fall back to JSON."""
    formatter_cls = FORMATTERS.get((output_format or "").lower())
    if formatter_cls is None:
        logger.warning("[PIPELINE] Unknown output format '%s', using JSON", output_format)
        formatter_cls = JsonFormatter
    return formatter_cls()
