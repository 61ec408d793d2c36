import os
import tempfile


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


SERVICE_SETTINGS = {
    # Kill switch for the public endpoint (503 when disabled)
    "api_enabled": _env_bool("COMPRESS_API_ENABLED", True),

    # Disk cache
    "cache_dir": os.getenv("COMPRESS_CACHE_DIR", os.path.join(tempfile.gettempdir(), "compress-cache")),
    "cache_ttl_seconds": int(os.getenv("COMPRESS_CACHE_TTL", "3600")),
    "cache_sweep_enabled": _env_bool("CACHE_SWEEP_ENABLED", False),
    "cache_sweep_interval": int(os.getenv("CACHE_SWEEP_INTERVAL", "900")),  # 15 minutes

    # Scratch files for the video encoder
    "scratch_dir": os.getenv("COMPRESS_SCRATCH_DIR", tempfile.gettempdir()),

    # Admission control
    "queue_capacity": int(os.getenv("COMPRESS_QUEUE_CAPACITY", "10")),
    "job_wait_timeout": int(os.getenv("JOB_WAIT_TIMEOUT", "1800")),  # 30 minutes

    # Source download limits
    "fetch_timeout": int(os.getenv("FETCH_TIMEOUT", "45")),
    "fetch_max_bytes": int(os.getenv("FETCH_MAX_BYTES", str(500 * 1024 * 1024))),  # 500MB

    # Upload container and link lifetime
    "upload_container": os.getenv("UPLOAD_CONTAINER", "compressed"),
    "sas_expiry_minutes": int(os.getenv("SAS_EXPIRY_MINUTES", "1440")),  # 24 hours

    # Azure Table job records
    "job_tracking_enabled": _env_bool("JOB_TRACKING_ENABLED", False),
}

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png")
VIDEO_EXTENSIONS = (".mp4", ".mov", ".avi")
