import json
import os
import subprocess
from unittest.mock import patch

import pytest

from integrations.errors import EncodeProcessError, NonConvergenceError
from processing import parse_size_spec
from processing.config import get_video_config
from processing.video import (
    MB,
    VideoCompressor,
    build_ffmpeg_cmd,
    plan_attempt,
    probe_video,
    run_encoder,
)


SOURCE_META = {"duration": 60.0, "width": 1280, "height": 720}


class FakeEncoder:
    """Writes outputs of scripted sizes (in MB) and records each command."""

    def __init__(self, sizes_mb):
        self.sizes_mb = list(sizes_mb)
        self.commands = []

    def __call__(self, cmd, timeout):
        self.commands.append(cmd)
        size = self.sizes_mb[min(len(self.commands), len(self.sizes_mb)) - 1]
        with open(cmd[-1], "wb") as fh:
            fh.write(b"\0" * int(size * MB))

    def option(self, index, flag):
        cmd = self.commands[index]
        return cmd[cmd.index(flag) + 1]


def _compressor(encoder, scratch_dir, cache=None, **overrides):
    return VideoCompressor(
        cache=cache,
        scratch_dir=scratch_dir,
        config=get_video_config(**overrides),
        probe=lambda path, config: dict(SOURCE_META),
        runner=encoder,
    )


def test_plan_for_ten_mb_720p_source_at_five_mb():
    plan = plan_attempt(SOURCE_META, original_mb=10, target_mb=5, config=get_video_config())

    # ratio clamps to 0.6 -> 720 * 0.6**0.8 = 478.4
    assert plan["height"] == 478
    assert plan["width"] == 850
    assert plan["crf"] == 21.5
    # (5*8*1024*1.1 - 64*60) / 60 is below the floor
    assert plan["video_bitrate_kbps"] == 1200
    assert plan["audio_bitrate_kbps"] == 64


def test_plan_clamps_height_and_crf():
    config = get_video_config()

    tiny = plan_attempt(SOURCE_META, original_mb=100, target_mb=1, config=config)
    assert tiny["height"] == 478  # ratio floor
    assert tiny["crf"] == 18

    larger = plan_attempt(SOURCE_META, original_mb=10, target_mb=20, config=config)
    assert larger["height"] == 720
    assert larger["crf"] == 29.0

    huge = plan_attempt(SOURCE_META, original_mb=10, target_mb=40, config=config)
    assert huge["crf"] == 32


def test_plan_keeps_even_dimensions_and_min_height():
    meta = {"duration": 10.0, "width": 1918, "height": 1079}
    plan = plan_attempt(meta, original_mb=50, target_mb=30, config=get_video_config())

    assert plan["height"] % 2 == 0
    assert plan["width"] % 2 == 0
    assert plan["height"] >= 360


def test_plan_bitrate_from_budget():
    meta = {"duration": 10.0, "width": 1280, "height": 720}
    plan = plan_attempt(meta, original_mb=20, target_mb=10, config=get_video_config())

    expected = (10 * 8 * 1024 * 1.1 - 64 * 10) / 10
    assert plan["video_bitrate_kbps"] == round(expected)


def test_ffmpeg_command_options(tmp_path):
    params = {"width": 850, "height": 478, "crf": 21.5, "video_bitrate_kbps": 1200, "audio_bitrate_kbps": 64}
    cmd = build_ffmpeg_cmd("in.mp4", "out.mp4", params, get_video_config())

    assert cmd[0] == "ffmpeg"
    assert cmd[-1] == "out.mp4"
    assert cmd[cmd.index("-c:v") + 1] == "libx264"
    assert cmd[cmd.index("-c:a") + 1] == "aac"
    assert cmd[cmd.index("-vf") + 1] == "scale=850:478"
    assert cmd[cmd.index("-crf") + 1] == "21.5"
    assert cmd[cmd.index("-maxrate") + 1] == "1200k"
    assert cmd[cmd.index("-b:a") + 1] == "64k"
    assert "+faststart" in cmd


def test_end_to_end_ten_mb_source_to_five_mb(scratch_dir, cache):
    encoder = FakeEncoder([4.8])
    compressor = _compressor(encoder, scratch_dir, cache)

    result = compressor.compress(b"\0" * (10 * MB), parse_size_spec("5", "video"), 10.0, cache_key="vid")

    assert 4.5 <= len(result.data) / MB <= 5.5
    assert len(encoder.commands) == 1
    height = int(encoder.option(0, "-vf").split(":")[1])
    assert height <= 720 and height % 2 == 0
    assert 18 <= float(encoder.option(0, "-crf")) <= 32
    assert result.size_reduction == pytest.approx(52.0)
    assert cache.get("vid") == result.data


def test_too_big_then_shrinks_target(scratch_dir):
    encoder = FakeEncoder([7.0, 5.2])
    compressor = _compressor(encoder, scratch_dir)

    result = compressor.compress(b"\0" * (10 * MB), parse_size_spec("5", "video"), 10.0)

    assert len(encoder.commands) == 2
    # second attempt targets 5 * 0.8 = 4 MB -> crf 24 - (10 - 4) * 0.5
    assert encoder.option(1, "-crf") == "21"
    assert len(result.data) == int(5.2 * MB)


def test_too_small_then_grows_target(scratch_dir):
    encoder = FakeEncoder([3.0, 4.9])
    compressor = _compressor(encoder, scratch_dir)

    compressor.compress(b"\0" * (10 * MB), parse_size_spec("5", "video"), 10.0)

    # 5 * 1.2 = 6 MB -> crf 24 - (10 - 6) * 0.5
    assert encoder.option(1, "-crf") == "22"


def test_percentage_target(scratch_dir):
    encoder = FakeEncoder([4.0])
    compressor = _compressor(encoder, scratch_dir)

    result = compressor.compress(b"\0" * (8 * MB), parse_size_spec("50%", "video"), 8.0)

    assert len(result.data) == 4 * MB


def test_tolerance_lower_boundary_is_inclusive(scratch_dir):
    encoder = FakeEncoder([4.5])
    compressor = _compressor(encoder, scratch_dir)

    compressor.compress(b"\0" * (10 * MB), parse_size_spec("5", "video"), 10.0)

    assert len(encoder.commands) == 1


def test_just_below_window_retries(scratch_dir):
    encoder = FakeEncoder([4.49, 5.0])
    compressor = _compressor(encoder, scratch_dir)

    compressor.compress(b"\0" * (10 * MB), parse_size_spec("5", "video"), 10.0)

    assert len(encoder.commands) == 2


def test_wide_lower_tolerance_accepts_smaller_output(scratch_dir):
    encoder = FakeEncoder([2.0])
    compressor = _compressor(encoder, scratch_dir, tolerance_low_mb=3.5)

    compressor.compress(b"\0" * (10 * MB), parse_size_spec("5", "video"), 10.0)

    assert len(encoder.commands) == 1


def test_non_convergence_raises_after_five_attempts(scratch_dir, cache):
    encoder = FakeEncoder([9.0])
    compressor = _compressor(encoder, scratch_dir, cache)

    with pytest.raises(NonConvergenceError) as excinfo:
        compressor.compress(b"\0" * (10 * MB), parse_size_spec("5", "video"), 10.0, cache_key="vid")

    assert len(encoder.commands) == 5
    assert excinfo.value.actual_mb == pytest.approx(9.0)
    assert excinfo.value.target_mb == 5
    assert cache.get("vid") is None
    assert os.listdir(scratch_dir) == []


def test_scratch_files_removed_on_success(scratch_dir):
    encoder = FakeEncoder([5.0])
    compressor = _compressor(encoder, scratch_dir)

    compressor.compress(b"\0" * (10 * MB), parse_size_spec("5", "video"), 10.0, extension=".mov")

    assert os.listdir(scratch_dir) == []
    assert encoder.commands[0][2].endswith(".mov")


def test_scratch_files_removed_on_encoder_failure(scratch_dir):
    def failing(cmd, timeout):
        with open(cmd[-1], "wb") as fh:
            fh.write(b"partial")
        raise EncodeProcessError("FFmpeg failed with exit code 1", stderr="boom")

    compressor = _compressor(failing, scratch_dir)

    with pytest.raises(EncodeProcessError):
        compressor.compress(b"\0" * MB, parse_size_spec("5", "video"), 1.0)

    assert os.listdir(scratch_dir) == []


def test_cache_hit_short_circuits(scratch_dir, cache):
    cache.put("vid", b"cached-video")
    encoder = FakeEncoder([5.0])
    compressor = _compressor(encoder, scratch_dir, cache)

    result = compressor.compress(b"\0" * (10 * MB), parse_size_spec("5", "video"), 10.0, cache_key="vid")

    assert result.cached
    assert result.data == b"cached-video"
    assert encoder.commands == []


def _completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_probe_reads_duration_and_dimensions():
    output = json.dumps({"streams": [{"width": 1920, "height": 1080}], "format": {"duration": "12.5"}})

    with patch("processing.video.subprocess.run", return_value=_completed(output)):
        info = probe_video("in.mp4", get_video_config())

    assert info == {"duration": 12.5, "width": 1920, "height": 1080}


def test_probe_defaults_for_missing_values():
    output = json.dumps({"streams": [{"width": 640}], "format": {"duration": "N/A"}})

    with patch("processing.video.subprocess.run", return_value=_completed(output)):
        info = probe_video("in.mp4", get_video_config())

    assert info == {"duration": 1.0, "width": 640, "height": 720}


def test_probe_failure_uses_defaults():
    with patch("processing.video.subprocess.run", return_value=_completed(returncode=1, stderr="bad")):
        info = probe_video("in.mp4", get_video_config())

    assert info == {"duration": 1.0, "width": 1280, "height": 720}


def test_run_encoder_nonzero_exit():
    with patch("processing.video.subprocess.run", return_value=_completed(returncode=1, stderr="x264 error")):
        with pytest.raises(EncodeProcessError) as excinfo:
            run_encoder(["ffmpeg"], timeout=5)

    assert excinfo.value.stderr == "x264 error"


def test_run_encoder_timeout():
    with patch("processing.video.subprocess.run", side_effect=subprocess.TimeoutExpired(["ffmpeg"], 5)):
        with pytest.raises(EncodeProcessError, match="timed out"):
            run_encoder(["ffmpeg"], timeout=5)


def test_run_encoder_missing_binary():
    with patch("processing.video.subprocess.run", side_effect=FileNotFoundError("ffmpeg")):
        with pytest.raises(EncodeProcessError):
            run_encoder(["ffmpeg"], timeout=5)
