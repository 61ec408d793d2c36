import json
import logging
import threading
import time

import azure.functions as func

from config.compression_config import SERVICE_SETTINGS
from integrations.auth import check_api_key
from integrations.errors import AuthenticationError, CompressionServiceError
from integrations.tracking import get_job_status
from processing.orchestrator import CompressionService


app = func.FunctionApp()

START_TIME = time.time()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, X-Api-Key, Authorization",
}

service = CompressionService.from_settings(SERVICE_SETTINGS)


def _json_response(body: dict, status_code: int) -> func.HttpResponse:
    return func.HttpResponse(
        body=json.dumps(body),
        mimetype="application/json",
        status_code=status_code,
        headers=CORS_HEADERS,
    )


def _error_response(message: str, status_code: int) -> func.HttpResponse:
    return _json_response({"status": "error", "error": message}, status_code)


@app.route(route="health", auth_level=func.AuthLevel.ANONYMOUS)
def health(req: func.HttpRequest) -> func.HttpResponse:  # type: ignore[override]
    """Simple health endpoint with queue state for debugging/UI status."""
    body = {
        "status": "ok",
        "api_enabled": SERVICE_SETTINGS["api_enabled"],
        "host_uptime_seconds": int(time.time() - START_TIME),
        "queue_pending": service.queue.pending(),
        "queue_capacity": service.queue.capacity,
        "queue_busy": service.queue.is_busy(),
        "endpoints": [
            "GET /api/compress",
            "GET /api/status",
            "GET /api/health",
        ],
    }
    return _json_response(body, 200)


@app.route(route="compress", auth_level=func.AuthLevel.ANONYMOUS, methods=["GET", "OPTIONS"])
def compress(req: func.HttpRequest) -> func.HttpResponse:  # type: ignore[override]
    """Compress a remote image or video to a target size and return a link.

    GET /api/compress?url=<source>&size=<spec>
        size: bare number (KB for images, MB for video) or percentage ("50%")
    """
    if req.method == "OPTIONS":
        return func.HttpResponse(status_code=200, headers=CORS_HEADERS)

    if not SERVICE_SETTINGS["api_enabled"]:
        return _error_response("API is currently disabled", 503)

    url = req.params.get("url")
    size = req.params.get("size")
    if not url or not size:
        return _error_response("Parameters url and size are required", 400)

    try:
        data = service.handle(url, size)
    except CompressionServiceError as exc:
        if exc.status_code >= 500:
            logging.error("Compression request failed: %s", exc.message)
        else:
            logging.info("Compression request rejected (%d): %s", exc.status_code, exc.message)
        return _error_response(exc.message, exc.status_code)
    except Exception as exc:
        logging.exception("Unexpected compression failure: %s", str(exc))
        return _error_response("Compression failed", 500)

    return _json_response({"status": "success", "data": data}, 200)


@app.route(route="status", auth_level=func.AuthLevel.ANONYMOUS, methods=["GET"])
def get_status(req: func.HttpRequest) -> func.HttpResponse:  # type: ignore[override]
    """Get the tracked status of a compression job.

    Query parameters:
        key: Cache key of the request

    Requires an API key via X-Api-Key or Authorization: Bearer when keys are configured.
    """
    try:
        check_api_key(req)
    except AuthenticationError as exc:
        return _error_response(exc.message, exc.status_code)

    if not SERVICE_SETTINGS["job_tracking_enabled"]:
        return _error_response("Job tracking is disabled", 404)

    key = req.params.get("key")
    if not key:
        return _error_response("key parameter is required", 400)

    try:
        job_status = get_job_status(key)
    except Exception as exc:
        logging.error("Status check failed: %s", str(exc))
        return _error_response(str(exc), 500)

    if not job_status:
        return _error_response(f"No job found for key: {key}", 404)

    response = {
        "key": key,
        "status": job_status.get("status"),
        "url": job_status.get("url"),
        "size": job_status.get("size"),
        "media_kind": job_status.get("media_kind"),
        "created_at": job_status.get("created_at"),
        "updated_at": job_status.get("updated_at"),
    }

    if job_status.get("status") == "completed":
        response["completed_at"] = job_status.get("completed_at")
        response["link"] = job_status.get("link")
        response["cached"] = job_status.get("cached")
        response["sizeReduction"] = job_status.get("size_reduction")

    if job_status.get("status") == "failed":
        response["failed_at"] = job_status.get("failed_at")
        response["error_message"] = job_status.get("error_message")

    return _json_response(response, 200)


def sweep_cache() -> None:
    """Delete cache entries older than the TTL."""
    try:
        removed = service.cache.sweep()
        logging.info("=== CACHE SWEEP COMPLETED: %d stale entries removed ===", removed)
    except OSError as exc:
        logging.error("Cache sweep failed: %s", str(exc))


def cache_sweep_worker():
    """Background worker that sweeps the cache every CACHE_SWEEP_INTERVAL seconds."""
    while True:
        time.sleep(SERVICE_SETTINGS["cache_sweep_interval"])
        sweep_cache()


# Stale entries are otherwise only ignored on read; the sweeper is opt-in
if SERVICE_SETTINGS["cache_sweep_enabled"]:
    sweep_thread = threading.Thread(target=cache_sweep_worker, daemon=True)
    sweep_thread.start()
    logging.info("Background cache sweeper started")
