import io
import os
import random

import pytest
from PIL import Image

from processing.cache import CacheStore


def make_png(width: int = 64, height: int = 48, mode: str = "RGB") -> bytes:
    """Small gradient image as PNG bytes."""
    image = Image.new(mode, (width, height))
    pixels = image.load()
    for x in range(width):
        for y in range(height):
            if mode == "RGBA":
                pixels[x, y] = (x * 4 % 256, y * 5 % 256, (x + y) % 256, 128)
            else:
                pixels[x, y] = (x * 4 % 256, y * 5 % 256, (x + y) % 256)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def make_noise_png(width: int = 320, height: int = 240, seed: int = 7) -> bytes:
    """Noisy photo-like image; JPEG size responds smoothly to quality."""
    rng = random.Random(seed)
    base = Image.linear_gradient("L").resize((width, height)).convert("RGB")
    noise = Image.frombytes("RGB", (width, height), rng.randbytes(width * height * 3))
    image = Image.blend(base, noise, 0.35)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def cache(tmp_path):
    return CacheStore(str(tmp_path / "cache"), ttl_seconds=3600)


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def scratch_dir(tmp_path):
    path = tmp_path / "scratch"
    os.makedirs(path)
    return str(path)
