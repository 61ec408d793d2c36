import json
from unittest.mock import MagicMock, patch

import azure.functions as func
import pytest

import function_app
from integrations.errors import (
    EncodeProcessError,
    FetchError,
    NonConvergenceError,
    QueueFullError,
    UnsupportedFormatError,
    UploadError,
    ValidationError,
)


def _user_function(handler):
    """Unwrap the function registered with the Functions app, if decorated."""
    build = getattr(handler, "build", None)
    return build().get_user_function() if build else handler


def _request(route, params=None, method="GET", headers=None):
    return func.HttpRequest(
        method=method,
        url=f"/api/{route}",
        params=params or {},
        headers=headers or {},
        body=b"",
    )


@pytest.fixture
def service():
    mock = MagicMock()
    mock.queue.capacity = 10
    mock.queue.pending.return_value = 2
    mock.queue.is_busy.return_value = True
    with patch.object(function_app, "service", mock):
        yield mock


def _call_compress(params):
    response = _user_function(function_app.compress)(_request("compress", params))
    return response.status_code, json.loads(response.get_body() or b"{}")


def test_success_envelope(service):
    service.handle.return_value = {"link": "https://files/x.jpg", "cached": False, "sizeReduction": 71.2}

    status, body = _call_compress({"url": "https://x.test/a.jpg", "size": "50%"})

    assert status == 200
    assert body == {"status": "success", "data": {"link": "https://files/x.jpg", "cached": False, "sizeReduction": 71.2}}
    service.handle.assert_called_once_with("https://x.test/a.jpg", "50%")


@pytest.mark.parametrize("params", [{}, {"url": "https://x.test/a.jpg"}, {"size": "5"}])
def test_missing_params_is_400(service, params):
    status, body = _call_compress(params)

    assert status == 400
    assert body["status"] == "error"
    service.handle.assert_not_called()


@pytest.mark.parametrize("error,expected", [
    (ValidationError("bad size"), 400),
    (UnsupportedFormatError("Unsupported file type: .gif"), 400),
    (QueueFullError("Server busy, try again later"), 429),
    (FetchError("timeout"), 500),
    (EncodeProcessError("ffmpeg failed"), 500),
    (NonConvergenceError("no convergence"), 500),
    (UploadError("upload failed"), 500),
])
def test_error_mapping(service, error, expected):
    service.handle.side_effect = error

    status, body = _call_compress({"url": "https://x.test/a.jpg", "size": "5"})

    assert status == expected
    assert body == {"status": "error", "error": error.message}


def test_unexpected_error_is_500(service):
    service.handle.side_effect = RuntimeError("disk on fire")

    status, body = _call_compress({"url": "https://x.test/a.jpg", "size": "5"})

    assert status == 500
    assert body["error"] == "Compression failed"


def test_disabled_api_is_503(service):
    with patch.dict(function_app.SERVICE_SETTINGS, {"api_enabled": False}):
        status, _ = _call_compress({"url": "https://x.test/a.jpg", "size": "5"})

    assert status == 503
    service.handle.assert_not_called()


def test_cors_header_present(service):
    service.handle.return_value = {"link": "l", "cached": True}
    response = _user_function(function_app.compress)(
        _request("compress", {"url": "https://x.test/a.jpg", "size": "5"})
    )

    assert response.headers["Access-Control-Allow-Origin"] == "*"


def test_health_reports_queue(service):
    response = _user_function(function_app.health)(_request("health"))
    body = json.loads(response.get_body())

    assert response.status_code == 200
    assert body["queue_pending"] == 2
    assert body["queue_capacity"] == 10
    assert body["queue_busy"] is True


def test_status_requires_api_key(service, monkeypatch):
    monkeypatch.setenv("COMPRESS_API_KEY_PROD", "secret")

    response = _user_function(function_app.get_status)(_request("status", {"key": "abc"}))

    assert response.status_code == 401
    assert json.loads(response.get_body())["error"].startswith("Missing API key")
    assert response.headers["Access-Control-Allow-Origin"] == "*"


def test_status_returns_tracked_job(service, monkeypatch):
    monkeypatch.setenv("COMPRESS_API_KEY_PROD", "secret")
    record = {"status": "completed", "url": "https://x.test/a.jpg", "size": "5", "link": "https://files/x.jpg"}

    with patch.dict(function_app.SERVICE_SETTINGS, {"job_tracking_enabled": True}), \
            patch.object(function_app, "get_job_status", return_value=record):
        response = _user_function(function_app.get_status)(
            _request("status", {"key": "abc"}, headers={"X-Api-Key": "secret"})
        )

    body = json.loads(response.get_body())
    assert response.status_code == 200
    assert body["status"] == "completed"
    assert body["link"] == "https://files/x.jpg"


def test_sweep_cache_logs_count(service):
    service.cache.sweep.return_value = 3

    function_app.sweep_cache()

    service.cache.sweep.assert_called_once()
