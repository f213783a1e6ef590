import pytest
from fastapi import HTTPException

import dataexport.app as app_module
from services.job_service import INVALID, NOT_FOUND, REJECTED


def test_require_admin_api_key_rejects_when_missing_key(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", None)
    with pytest.raises(HTTPException) as exc:
        app_module.require_admin_api_key("any")
    assert exc.value.status_code == 503


def test_require_admin_api_key_rejects_invalid_value(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    with pytest.raises(HTTPException) as exc:
        app_module.require_admin_api_key("wrong")
    assert exc.value.status_code == 401


def test_require_admin_api_key_rejects_missing_header(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    with pytest.raises(HTTPException) as exc:
        app_module.require_admin_api_key(None)
    assert exc.value.status_code == 401


def test_require_admin_api_key_accepts_valid_value(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    assert app_module.require_admin_api_key("secret") is None


def test_require_admin_api_key_skipped_when_insecure(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", True)
    monkeypatch.setattr(app_module, "API_KEY", None)
    assert app_module.require_admin_api_key(None) is None


@pytest.mark.parametrize("error_code, status", [
    (NOT_FOUND, 404),
    (REJECTED, 409),
    (INVALID, 400),
    (None, 500),
])
def test_unwrap_maps_service_errors_to_status_codes(error_code, status):
    with pytest.raises(HTTPException) as exc:
        app_module._unwrap({"success": False, "error": "nope", "error_code": error_code})
    assert exc.value.status_code == status
    assert exc.value.detail == "nope"


def test_unwrap_passes_successful_results_through():
    result = {"success": True, "data": {"id": 1}}
    assert app_module._unwrap(result) is result
