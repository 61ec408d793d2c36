"""Search and encoder profiles for the size-targeting compressors."""

import os
from typing import Dict, Any


# Binary search over JPEG quality
DEFAULT_IMAGE_CONFIG = {
    "initial_quality": 85,
    "min_quality": 1,
    "max_quality": 100,
    "max_iterations": 8,
    "tolerance": 0.05,  # +/-5% of the target size
    "progressive": True,
    "optimize": True,
}


# Iterative resolution / bitrate / CRF search
DEFAULT_VIDEO_CONFIG = {
    "max_attempts": 5,

    # Tolerance window around the target in MB. Set VIDEO_TOLERANCE_LOW_MB=3.5
    # for the wider lower bound.
    "tolerance_low_mb": float(os.getenv("VIDEO_TOLERANCE_LOW_MB", "0.5")),
    "tolerance_high_mb": float(os.getenv("VIDEO_TOLERANCE_HIGH_MB", "0.5")),

    # Target adjustment between attempts
    "grow_factor": 1.2,
    "shrink_factor": 0.8,

    # Resolution derivation
    "min_ratio": 0.6,
    "ratio_exponent": 0.8,
    "min_height": 360,

    # CRF derivation: base - (original_mb - target_mb) * slope, clamped
    "crf_base": 24,
    "crf_slope": 0.5,
    "crf_min": 18,
    "crf_max": 32,

    # Bitrate budget
    "audio_bitrate_kbps": 64,
    "min_video_bitrate_kbps": 1200,
    "container_overhead": 1.1,

    # Probe fallbacks
    "default_duration": 1.0,
    "default_width": 1280,
    "default_height": 720,

    # Encoder
    "video_codec": "libx264",
    "audio_codec": "aac",
    "preset": os.getenv("FFMPEG_PRESET", "medium"),
    "enable_faststart": True,
    "pix_fmt": "yuv420p",

    # Processing limits
    "max_processing_time": int(os.getenv("FFMPEG_TIMEOUT", "600")),  # per encode, 10 minutes
    "probe_timeout": 30,
}


def get_image_config(**overrides: Any) -> Dict[str, Any]:
    """Image search configuration with optional overrides."""
    config = DEFAULT_IMAGE_CONFIG.copy()
    config.update(overrides)
    return config


def get_video_config(**overrides: Any) -> Dict[str, Any]:
    """Get video search configuration with optional overrides.

    Examples:
        # Default search
        config = get_video_config()

        # Accept the wider lower tolerance
        config = get_video_config(tolerance_low_mb=3.5)

        # Faster encodes for smoke testing
        config = get_video_config(preset="ultrafast", max_attempts=2)
    """
    config = DEFAULT_VIDEO_CONFIG.copy()
    config.update(overrides)
    return config
