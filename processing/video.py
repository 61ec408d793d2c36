import json
import logging
import math
import os
import subprocess
import tempfile
import time
from typing import Callable, Dict, List, Optional

from integrations.errors import EncodeProcessError, NonConvergenceError
from processing import CompressionResult, SizeSpec, size_reduction_percent
from processing.cache import CacheStore
from processing.config import get_video_config


MB = 1024 * 1024


def probe_video(input_path: str, config: Dict) -> Dict:
    """Get duration, width and height using ffprobe.

    Any value ffprobe cannot produce falls back to the configured default
    (1s, 1280x720).
    """
    info = {
        "duration": config["default_duration"],
        "width": config["default_width"],
        "height": config["default_height"],
    }
    cmd = [
        "ffprobe",
        "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "format=duration:stream=width,height",
        "-of", "json",
        input_path,
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=config["probe_timeout"])
    except (OSError, subprocess.TimeoutExpired) as exc:
        logging.warning("ffprobe could not run, using defaults: %s", str(exc))
        return info

    if result.returncode != 0:
        logging.warning("ffprobe failed, using defaults: %s", result.stderr)
        return info

    try:
        data = json.loads(result.stdout or "{}")
    except ValueError:
        logging.warning("ffprobe returned invalid JSON, using defaults")
        return info

    duration = _positive_number(data.get("format", {}).get("duration"))
    if duration:
        info["duration"] = duration

    streams = data.get("streams") or []
    if streams:
        width = _positive_number(streams[0].get("width"))
        height = _positive_number(streams[0].get("height"))
        if width:
            info["width"] = int(width)
        if height:
            info["height"] = int(height)

    return info


def _positive_number(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or number <= 0:
        return None
    return number


def _even(value: float) -> int:
    value = int(value)
    return value - value % 2


def plan_attempt(metadata: Dict, original_mb: float, target_mb: float, config: Dict) -> Dict:
    """Derive scale, CRF and bitrate for one encode at the current target."""
    orig_width = metadata["width"]
    orig_height = metadata["height"]
    duration = metadata["duration"]

    ratio = max(config["min_ratio"], target_mb / original_mb) if original_mb else 1.0

    height = round(orig_height * ratio ** config["ratio_exponent"])
    height = max(config["min_height"], min(orig_height, height))
    height = _even(height)
    width = _even(round(height * (orig_width / orig_height)))

    crf = config["crf_base"] - (original_mb - target_mb) * config["crf_slope"]
    crf = min(config["crf_max"], max(config["crf_min"], crf))

    audio_kbps = config["audio_bitrate_kbps"]
    budget_kbits = target_mb * 8 * 1024 * config["container_overhead"]
    video_kbps = max(config["min_video_bitrate_kbps"], (budget_kbits - audio_kbps * duration) / duration)

    return {
        "width": width,
        "height": height,
        "crf": round(crf, 2),
        "video_bitrate_kbps": int(round(video_kbps)),
        "audio_bitrate_kbps": audio_kbps,
    }


def build_ffmpeg_cmd(input_path: str, output_path: str, params: Dict, config: Dict) -> List[str]:
    """Build the H.264/AAC command for one attempt (capped CRF)."""
    video_kbps = params["video_bitrate_kbps"]
    cmd: List[str] = [
        "ffmpeg",
        "-i", input_path,
        "-c:v", config["video_codec"],
        "-c:a", config["audio_codec"],
        # Scale to the planned size; both sides are already even (H.264 requirement)
        "-vf", f"scale={params['width']}:{params['height']}",
        "-crf", f"{params['crf']:g}",
        "-maxrate", f"{video_kbps}k",
        "-bufsize", f"{video_kbps * 2}k",
        "-b:a", f"{params['audio_bitrate_kbps']}k",
        "-preset", config["preset"],
        "-pix_fmt", config["pix_fmt"],
    ]

    if config.get("enable_faststart", True):
        cmd.extend(["-movflags", "+faststart"])

    cmd.extend(["-y", output_path])
    return cmd


def run_encoder(cmd: List[str], timeout: int) -> None:
    """Run the encoder to completion, raising EncodeProcessError on failure or timeout."""
    logging.info("Running FFmpeg: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        raise EncodeProcessError(f"FFmpeg timed out after {timeout}s", stderr=str(exc.stderr or "")) from exc
    except OSError as exc:
        raise EncodeProcessError(f"FFmpeg could not be started: {exc}") from exc

    logging.info("FFmpeg return code: %s", result.returncode)
    if result.returncode != 0:
        logging.error("FFmpeg stderr: %s", result.stderr)
        raise EncodeProcessError(f"FFmpeg failed with exit code {result.returncode}", stderr=result.stderr)


class VideoCompressor:
    """Iterative resolution/bitrate/CRF search until the output size lands in the tolerance window.

    Unlike the image path there is no best-effort result: a search that
    ends outside the window raises NonConvergenceError.
    """

    def __init__(
        self,
        cache: Optional[CacheStore] = None,
        scratch_dir: Optional[str] = None,
        config: Optional[Dict] = None,
        probe: Callable[[str, Dict], Dict] = probe_video,
        runner: Callable[[List[str], int], None] = run_encoder,
    ) -> None:
        self.cache = cache
        self.scratch_dir = scratch_dir or tempfile.gettempdir()
        self.config = config or get_video_config()
        self.probe = probe
        self.runner = runner

    def resolve_target_mb(self, size_spec: SizeSpec, original_mb: float) -> float:
        if size_spec.is_percentage:
            return original_mb * size_spec.value / 100
        return size_spec.value

    def compress(
        self,
        data: bytes,
        size_spec: SizeSpec,
        original_mb: float,
        cache_key: Optional[str] = None,
        extension: str = ".mp4",
    ) -> CompressionResult:
        if self.cache is not None and cache_key:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return self._result(data, cached, cached=True)

        config = self.config
        requested_mb = self.resolve_target_mb(size_spec, original_mb)
        target_mb = requested_mb
        min_mb = requested_mb - config["tolerance_low_mb"]
        max_mb = requested_mb + config["tolerance_high_mb"]

        stamp = int(time.time() * 1000)
        os.makedirs(self.scratch_dir, exist_ok=True)
        input_path = os.path.join(self.scratch_dir, f"vid_in_{stamp}{extension}")
        output_path = os.path.join(self.scratch_dir, f"vid_out_{stamp}.mp4")

        logging.info("=== VIDEO SEARCH STARTED: target %.2f MB, window [%.2f, %.2f], original %.2f MB ===",
                     target_mb, min_mb, max_mb, original_mb)

        try:
            with open(input_path, "wb") as fh:
                fh.write(data)

            metadata = self.probe(input_path, config)
            logging.info("Source metadata: %s", metadata)

            actual_mb = 0.0
            converged = False
            for attempt in range(1, config["max_attempts"] + 1):
                params = plan_attempt(metadata, original_mb, target_mb, config)
                logging.info(
                    "Attempt %d: target=%.2f MB, %dx%d, crf=%s, maxrate=%dk",
                    attempt, target_mb, params["width"], params["height"],
                    params["crf"], params["video_bitrate_kbps"],
                )

                cmd = build_ffmpeg_cmd(input_path, output_path, params, config)
                self.runner(cmd, config["max_processing_time"])

                actual_mb = os.path.getsize(output_path) / MB
                logging.info("Attempt %d produced %.2f MB", attempt, actual_mb)

                if actual_mb < min_mb:
                    target_mb *= config["grow_factor"]
                elif actual_mb > max_mb:
                    target_mb *= config["shrink_factor"]
                else:
                    converged = True
                    break

            if not converged:
                raise NonConvergenceError(
                    f"Video did not converge after {config['max_attempts']} attempts: "
                    f"{actual_mb:.2f} MB outside [{min_mb:.2f}, {max_mb:.2f}]",
                    actual_mb=actual_mb,
                    target_mb=requested_mb,
                )

            with open(output_path, "rb") as fh:
                compressed = fh.read()

            if self.cache is not None and cache_key:
                self.cache.put(cache_key, compressed)

            logging.info("=== VIDEO SEARCH COMPLETED: %.2f MB ===", actual_mb)
            return self._result(data, compressed, cached=False)

        finally:
            for path in (input_path, output_path):
                if os.path.exists(path):
                    os.unlink(path)

    @staticmethod
    def _result(original: bytes, encoded: bytes, cached: bool) -> CompressionResult:
        return CompressionResult(
            data=encoded,
            size_reduction=size_reduction_percent(len(original), len(encoded)),
            cached=cached,
            content_type="video/mp4",
            extension=".mp4",
        )
