from unittest.mock import MagicMock, patch

import pytest
import requests

from services.destinations import DestinationService


@pytest.fixture
def export_file(tmp_path):
    path = tmp_path / "work" / "orders.json"
    path.parent.mkdir()
    path.write_text("[]")
    return path


def test_local_destination_into_directory(export_file, tmp_path):
    result = DestinationService(retry_delay=0).save_to_destination(
        str(export_file), "Local", {"path": str(tmp_path / "out")})
    assert result.success
    assert result.location == str(tmp_path / "out" / "orders.json")


def test_local_destination_explicit_file_with_root(export_file, tmp_path):
    result = DestinationService(retry_delay=0).save_to_destination(
        str(export_file), "local", {"root": str(tmp_path), "path": "daily/today.json"})
    assert result.location == str(tmp_path / "daily" / "today.json")


def test_local_destination_retries_then_gives_up(tmp_path):
    result = DestinationService(retry_delay=0).save_to_destination(
        str(tmp_path / "missing.json"), "Local", {"path": str(tmp_path / "out")}, max_retries=2)
    assert result.success is False
    assert "missing.json" in result.error


def test_unsupported_destination_type(export_file):
    result = DestinationService().save_to_destination(str(export_file), "Sftp", {})
    assert result.error == "Unsupported destination type 'Sftp'"


def test_http_destination_uploads_file(export_file):
    response = MagicMock(status_code=201, text='{"id": 9}')
    with patch("services.destinations.requests.request", return_value=response) as request:
        result = DestinationService(retry_delay=0).save_to_destination(
            str(export_file), "Http", {"url": "https://example.com/upload", "method": "put"})

    assert result.success
    assert result.location == "https://example.com/upload"
    assert result.message == '{"id": 9}'
    assert request.call_args[0] == ("PUT", "https://example.com/upload")


def test_http_destination_retries_on_request_errors(export_file):
    with patch("services.destinations.requests.request",
               side_effect=requests.ConnectionError("refused")) as request:
        result = DestinationService(retry_delay=0).save_to_destination(
            str(export_file), "Http", {"url": "https://example.com/upload"}, max_retries=2)
    assert result.success is False
    assert request.call_count == 3


def test_compensation_removes_local_file(export_file):
    service = DestinationService()
    assert service.compensate_export(str(export_file), "Local", {}) == (True, None)
    assert not export_file.exists()


def test_http_compensation_needs_url(export_file):
    ok, error = DestinationService().compensate_export("https://example.com/x", "Http", {})
    assert ok is False
    assert "compensationUrl" in error
