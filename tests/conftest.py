import os
import sys
import logging
from io import BytesIO

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'scripts')))

from budget_compressor import SourceImage  # noqa: E402

logging.getLogger('budget_compressor').setLevel(logging.DEBUG)


class StubEncoder:
    """Encoder whose output length is size_fn(fmt, quality, width, height)."""

    def __init__(self, size_fn):
        self.size_fn = size_fn
        self.calls = []

    def encode(self, img, fmt, quality):
        width, height = img.size
        self.calls.append((fmt, quality, width, height, img.mode))
        return b'x' * self.size_fn(fmt, quality, width, height)


def make_source(width, height, mode='RGB', source_format=None):
    color = (40, 90, 160, 255) if mode == 'RGBA' else (40, 90, 160)
    pixels = Image.new(mode, (width, height), color)
    return SourceImage(pixels=pixels, width=width, height=height,
                       channels=len(pixels.getbands()), source_format=source_format)


def gradient_array(width, height):
    x = np.linspace(0, 255, width, dtype=np.float32)
    y = np.linspace(0, 255, height, dtype=np.float32)
    r = np.tile(x, (height, 1))
    g = np.tile(y[:, None], (1, width))
    b = (r + g) / 2
    return np.stack([r, g, b], axis=-1).astype(np.uint8)


def encode_to_bytes(img, fmt, **params):
    buf = BytesIO()
    img.save(buf, format=fmt, **params)
    return buf.getvalue()


@pytest.fixture
def stub_encoder():
    return StubEncoder


@pytest.fixture
def opaque_jpeg_bytes():
    img = Image.fromarray(gradient_array(3300, 2200), 'RGB')
    return encode_to_bytes(img, 'JPEG', quality=90)


@pytest.fixture
def single_hole_png_bytes():
    """400x400 opaque PNG with one fully transparent pixel away from the corner."""
    img = Image.new('RGBA', (400, 400), (200, 30, 30, 255))
    img.putpixel((317, 211), (200, 30, 30, 0))
    return encode_to_bytes(img, 'PNG')
