import io
import logging
from typing import Dict, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from integrations.errors import EncodeProcessError
from processing import CompressionResult, size_reduction_percent
from processing.cache import CacheStore
from processing.config import get_image_config


# Results are JPEG unless the untouched source was kept because no encode beat it
SOURCE_TYPES = {
    "JPEG": (".jpg", "image/jpeg"),
    "PNG": (".png", "image/png"),
}


def output_type(data: bytes) -> Tuple[str, str]:
    """Return (extension, content type) for compressed or cached image bytes."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
    except (UnidentifiedImageError, OSError):
        image_format = None
    return SOURCE_TYPES.get(image_format, SOURCE_TYPES["JPEG"])


def _load_rgb(data: bytes) -> Tuple[Image.Image, str]:
    """Decode source bytes into an RGB image suitable for JPEG encoding."""
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise EncodeProcessError(f"Could not decode image: {exc}") from exc
    image_format = image.format or "JPEG"

    if image.mode == "P" and "transparency" in image.info:
        image = image.convert("RGBA")

    # JPEG has no alpha channel: flatten onto white
    if image.mode in ("RGBA", "LA"):
        background = Image.new("RGB", image.size, (255, 255, 255))
        background.paste(image, mask=image.getchannel("A"))
        return background, image_format

    if image.mode != "RGB":
        image = image.convert("RGB")
    return image, image_format


def _encode_jpeg(image: Image.Image, quality: int, config: Dict) -> bytes:
    output_buffer = io.BytesIO()
    image.save(
        output_buffer,
        format="JPEG",
        quality=quality,
        optimize=config.get("optimize", True),
        progressive=config.get("progressive", True),
    )
    return output_buffer.getvalue()


class ImageCompressor:
    """Binary search over JPEG quality until the output lands within tolerance of the target."""

    def __init__(self, cache: Optional[CacheStore] = None, config: Optional[Dict] = None) -> None:
        self.cache = cache
        self.config = config or get_image_config()

    def compress(self, data: bytes, target_kb: float, cache_key: Optional[str] = None) -> CompressionResult:
        if self.cache is not None and cache_key:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return self._result(data, cached, cached=True)

        config = self.config
        tolerance = config["tolerance"]
        upper_kb = target_kb * (1 + tolerance)
        lower_kb = target_kb * (1 - tolerance)

        image, _ = _load_rgb(data)
        low, high = config["min_quality"], config["max_quality"]
        quality = config["initial_quality"]

        best: Optional[bytes] = None  # largest encode under the target
        smallest: Optional[bytes] = None

        logging.info("=== IMAGE SEARCH STARTED: target %.1f KB (original %.1f KB) ===",
                     target_kb, len(data) / 1024)

        for iteration in range(1, config["max_iterations"] + 1):
            encoded = _encode_jpeg(image, quality, config)
            current_kb = len(encoded) / 1024
            if smallest is None or len(encoded) < len(smallest):
                smallest = encoded

            if current_kb > upper_kb:
                verdict = "too big"
                high = quality - 1
            elif current_kb < lower_kb:
                verdict = "too small"
                low = quality + 1
                best = encoded
            else:
                logging.info("Round %d: quality=%d -> %.1f KB, converged", iteration, quality, current_kb)
                return self._store(data, encoded, cache_key)

            logging.info("Round %d: quality=%d -> %.1f KB, %s", iteration, quality, current_kb, verdict)
            if low > high:
                break
            quality = (low + high + 1) // 2

        if best is not None:
            chosen = best
        elif smallest is not None and len(smallest) < len(data):
            chosen = smallest
        else:
            chosen = data

        logging.info("Image search did not converge; returning best effort of %.1f KB", len(chosen) / 1024)
        return self._store(data, chosen, cache_key)

    def _store(self, original: bytes, encoded: bytes, cache_key: Optional[str]) -> CompressionResult:
        if self.cache is not None and cache_key:
            self.cache.put(cache_key, encoded)
        return self._result(original, encoded, cached=False)

    @staticmethod
    def _result(original: bytes, encoded: bytes, cached: bool) -> CompressionResult:
        extension, content_type = output_type(encoded)
        return CompressionResult(
            data=encoded,
            size_reduction=size_reduction_percent(len(original), len(encoded)),
            cached=cached,
            content_type=content_type,
            extension=extension,
        )
