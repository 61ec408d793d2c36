import concurrent.futures
import logging
import os
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

from config.compression_config import IMAGE_EXTENSIONS, SERVICE_SETTINGS, VIDEO_EXTENSIONS
from integrations import tracking
from integrations.errors import (
    CompressionServiceError,
    CompressionTimeoutError,
    UnsupportedFormatError,
    ValidationError,
)
from integrations.storage import BlobUploader
from processing import IMAGE, VIDEO, CompressionResult, SizeSpec, parse_size_spec
from processing.cache import CacheStore, cache_key
from processing.fetch import SourceFetcher
from processing.image import ImageCompressor, output_type
from processing.jobqueue import JobQueue
from processing.video import MB, VideoCompressor


OUTPUT_TYPES = {
    IMAGE: (".jpg", "image/jpeg"),
    VIDEO: (".mp4", "video/mp4"),
}


def classify_source(url: Optional[str]) -> Tuple[str, str]:
    """Return (media kind, extension) for a source URL, judged by its path extension."""
    if not url or not url.strip():
        raise ValidationError("url parameter is required")

    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid source url: {url}")

    extension = os.path.splitext(parsed.path)[1].lower()
    if extension in IMAGE_EXTENSIONS:
        return IMAGE, extension
    if extension in VIDEO_EXTENSIONS:
        return VIDEO, extension
    raise UnsupportedFormatError(f"Unsupported file type: {extension or 'unknown'}")


class CompressionService:
    """Fetch, compress and upload, one job at a time through the queue."""

    def __init__(
        self,
        cache: CacheStore,
        fetcher: SourceFetcher,
        uploader,
        image_compressor: Optional[ImageCompressor] = None,
        video_compressor: Optional[VideoCompressor] = None,
        queue: Optional[JobQueue] = None,
        job_wait_timeout: Optional[float] = None,
        tracking_enabled: bool = False,
    ) -> None:
        self.cache = cache
        self.fetcher = fetcher
        self.uploader = uploader
        self.image_compressor = image_compressor or ImageCompressor(cache)
        self.video_compressor = video_compressor or VideoCompressor(cache)
        self.queue = queue or JobQueue()
        self.job_wait_timeout = job_wait_timeout
        self.tracking_enabled = tracking_enabled

    @classmethod
    def from_settings(cls, settings: Optional[Dict] = None) -> "CompressionService":
        settings = settings or SERVICE_SETTINGS
        cache = CacheStore(settings["cache_dir"], settings["cache_ttl_seconds"])
        return cls(
            cache=cache,
            fetcher=SourceFetcher(settings["fetch_timeout"], settings["fetch_max_bytes"]),
            uploader=BlobUploader(settings["upload_container"], settings["sas_expiry_minutes"]),
            image_compressor=ImageCompressor(cache),
            video_compressor=VideoCompressor(cache, scratch_dir=settings["scratch_dir"]),
            queue=JobQueue(settings["queue_capacity"]),
            job_wait_timeout=settings["job_wait_timeout"],
            tracking_enabled=settings["job_tracking_enabled"],
        )

    def handle(self, url: Optional[str], size_raw: Optional[str]) -> Dict:
        """Validate, queue and wait for one compression request.

        Returns ``{"link", "cached", "sizeReduction"?}``. Raises a
        CompressionServiceError subclass for every expected failure.
        """
        media_kind, extension = classify_source(url)
        size_spec = parse_size_spec(size_raw, media_kind)
        url = url.strip()
        key = cache_key(url, size_spec.raw)

        self._track(tracking.create_job_record, key, url, size_spec.raw, media_kind)
        try:
            future = self.queue.submit(
                lambda: self._run_job(url, size_spec, media_kind, extension, key),
                description=f"{media_kind}:{key[:12]}",
            )
        except CompressionServiceError as exc:
            self._track(tracking.update_job_status, key, "failed", error_message=exc.message)
            raise

        try:
            return future.result(timeout=self.job_wait_timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise CompressionTimeoutError(
                f"Compression did not finish within {self.job_wait_timeout}s"
            ) from None

    def _run_job(self, url: str, size_spec: SizeSpec, media_kind: str, extension: str, key: str) -> Dict:
        logging.info("=== COMPRESSION STARTED: %s (%s, size=%s) ===", url, media_kind, size_spec.raw)
        self._track(tracking.update_job_status, key, "processing")
        try:
            response = self._compress_and_upload(url, size_spec, media_kind, extension, key)
        except Exception as exc:
            logging.error("Compression failed for %s: %s", url, str(exc))
            self._track(tracking.update_job_status, key, "failed", error_message=str(exc))
            raise

        self._track(tracking.update_job_status, key, "completed", result=response)
        logging.info("=== COMPRESSION COMPLETED: %s ===", response)
        return response

    def _compress_and_upload(self, url: str, size_spec: SizeSpec, media_kind: str, extension: str, key: str) -> Dict:
        cached = self.cache.get(key)
        if cached is not None:
            if media_kind == IMAGE:
                out_extension, content_type = output_type(cached)
            else:
                out_extension, content_type = OUTPUT_TYPES[media_kind]
            # The source is not fetched on a hit, so the reduction is unknown
            result = CompressionResult(
                data=cached, size_reduction=None, cached=True,
                content_type=content_type, extension=out_extension,
            )
        else:
            source = self.fetcher.fetch(url)
            result = self._compress(source, size_spec, media_kind, extension, key)

        link = self.uploader.upload(result.data, f"compressed-{key}{result.extension}", result.content_type)

        response = {"link": link, "cached": result.cached}
        if result.size_reduction is not None:
            response["sizeReduction"] = round(result.size_reduction, 2)
        return response

    def _compress(self, source: bytes, size_spec: SizeSpec, media_kind: str, extension: str, key: str) -> CompressionResult:
        if media_kind == IMAGE:
            if size_spec.is_percentage:
                target_kb = len(source) / 1024 * size_spec.value / 100
            else:
                target_kb = size_spec.value
            return self.image_compressor.compress(source, target_kb, cache_key=key)

        return self.video_compressor.compress(
            source, size_spec, len(source) / MB, cache_key=key, extension=extension
        )

    def _track(self, func, *args, **kwargs) -> None:
        if self.tracking_enabled:
            func(*args, **kwargs)
