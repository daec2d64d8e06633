import threading

import pytest

from budget_compressor import (
    AdaptiveCompressor,
    Cancelled,
    CompressionConfig,
    CompressionInfeasible,
    EncodeFailed,
    InvalidDimensions,
    OutputFormat,
)
from conftest import StubEncoder, make_source


def linear_in_quality(scale):
    return lambda fmt, quality, width, height: int(scale * quality)


def compress(source, size_fn, **config_kwargs):
    encoder = StubEncoder(size_fn)
    compressor = AdaptiveCompressor(CompressionConfig(**config_kwargs), encoder)
    return compressor.compress_image(source), encoder


def test_full_quality_fit_needs_one_encode():
    result, encoder = compress(make_source(1650, 1100), lambda *a: 1000, max_bytes=2000)
    assert len(encoder.calls) == 1
    assert result.quality == 1.0
    assert result.attempts == 1
    assert (result.width, result.height) == (825, 550)


def test_binary_search_finds_highest_feasible_quality():
    result, encoder = compress(make_source(1650, 1100), linear_in_quality(200000),
                               max_bytes=100000)
    assert result.format is OutputFormat.JPEG
    assert result.quality == pytest.approx(0.5)
    assert result.byte_size == 100000
    assert (result.width, result.height) == (825, 550)


def test_search_is_bounded():
    config_kwargs = dict(max_bytes=100000, max_search_iterations=4)
    _, encoder = compress(make_source(1650, 1100), linear_in_quality(200000), **config_kwargs)
    # top probe + floor probe + at most 4 bisections
    assert len(encoder.calls) <= 6


def test_quality_search_is_monotonic():
    max_bytes = 77777
    _, encoder = compress(make_source(1650, 1100), linear_in_quality(250000),
                          max_bytes=max_bytes, min_quality=0.1)

    feasible, infeasible = [], []
    for fmt, quality, width, height, mode in encoder.calls:
        assert all(quality < bad for bad in infeasible)
        assert all(quality > good for good in feasible)
        if int(250000 * quality) <= max_bytes:
            feasible.append(quality)
        else:
            infeasible.append(quality)


def test_shrinks_dimensions_when_quality_is_not_enough():
    result, encoder = compress(make_source(1650, 1100),
                               lambda fmt, quality, width, height: width * height,
                               max_bytes=300000)
    assert (result.width, result.height) == (595, 397)
    assert result.quality == 1.0
    assert result.byte_size <= 300000
    sizes = []
    for _, _, width, height, _ in encoder.calls:
        if (width, height) not in sizes:
            sizes.append((width, height))
    assert sizes == [(825, 550), (701, 467), (595, 397)]


def test_infeasible_budget_is_reported():
    with pytest.raises(CompressionInfeasible) as info:
        compress(make_source(1650, 1100), lambda *a: 10000,
                 max_bytes=100, max_dimension_shrinks=3)
    exc = info.value
    assert exc.max_bytes == 100
    assert exc.smallest_size == 10000
    assert exc.last_quality == pytest.approx(0.2)
    assert exc.last_size is not None


def test_infeasible_search_encode_count():
    encoder = StubEncoder(lambda *a: 10000)
    compressor = AdaptiveCompressor(CompressionConfig(max_bytes=100, max_dimension_shrinks=3), encoder)
    with pytest.raises(CompressionInfeasible):
        compressor.compress_image(make_source(1650, 1100))
    # top and floor probe at each of the 4 sizes
    assert len(encoder.calls) == 8


def test_png_has_no_quality_axis():
    source = make_source(1650, 1100, 'RGBA')
    source.pixels.putpixel((5, 5), (0, 0, 0, 0))
    result, encoder = compress(source,
                               lambda fmt, quality, width, height: width * height,
                               max_bytes=300000)
    assert result.format is OutputFormat.PNG
    assert {quality for _, quality, _, _, _ in encoder.calls} == {1.0}
    assert len(encoder.calls) == 3


def test_alpha_fallback_retries_as_opaque_format():
    source = make_source(800, 800, 'RGBA')
    source.pixels.putpixel((400, 400), (0, 0, 0, 0))

    def size_fn(fmt, quality, width, height):
        return 10 ** 6 if fmt is OutputFormat.PNG else 500

    with pytest.raises(CompressionInfeasible):
        compress(source, size_fn, max_bytes=1000)

    result, encoder = compress(source, size_fn, max_bytes=1000,
                               allow_alpha_to_opaque_fallback=True)
    assert result.format is OutputFormat.JPEG
    assert result.alpha_flattened
    assert (result.width, result.height) == (825, 825)
    jpeg_calls = [call for call in encoder.calls if call[0] is OutputFormat.JPEG]
    assert jpeg_calls and all(mode == 'RGB' for *_, mode in jpeg_calls)


def test_transient_encoder_failure_is_retried():
    state = {'failed': False}

    class FlakyEncoder(StubEncoder):
        def encode(self, img, fmt, quality):
            if not state['failed']:
                state['failed'] = True
                raise OSError('encoder hiccup')
            return super().encode(img, fmt, quality)

    encoder = FlakyEncoder(lambda *a: 10)
    result = AdaptiveCompressor(CompressionConfig(), encoder).compress_image(make_source(100, 100))
    assert result.byte_size == 10
    assert result.attempts == 1


def test_persistent_encoder_failure_raises():
    class BrokenEncoder:
        calls = 0

        def encode(self, img, fmt, quality):
            BrokenEncoder.calls += 1
            raise OSError('no codec')

    compressor = AdaptiveCompressor(CompressionConfig(encode_retries=2), BrokenEncoder())
    with pytest.raises(EncodeFailed):
        compressor.compress_image(make_source(100, 100))
    # three tries at each of the seven sizes
    assert BrokenEncoder.calls == 3 * 7


def test_empty_encoder_output_raises():
    compressor = AdaptiveCompressor(CompressionConfig(), StubEncoder(lambda *a: 0))
    with pytest.raises(EncodeFailed):
        compressor.compress_image(make_source(100, 100))


def test_cancel_before_start():
    token = threading.Event()
    token.set()
    encoder = StubEncoder(lambda *a: 10)
    with pytest.raises(Cancelled):
        AdaptiveCompressor(CompressionConfig(), encoder).compress_image(make_source(100, 100), token)
    assert encoder.calls == []


def test_cancel_between_iterations():
    token = threading.Event()

    def size_fn(fmt, quality, width, height):
        token.set()
        return 10 ** 6

    encoder = StubEncoder(size_fn)
    with pytest.raises(Cancelled):
        AdaptiveCompressor(CompressionConfig(), encoder).compress_image(make_source(100, 100), token)
    assert len(encoder.calls) == 1


@pytest.mark.parametrize('kwargs', [
    dict(max_bytes=0),
    dict(target_width=0),
    dict(min_quality=0),
    dict(min_quality=0.9, max_quality=0.5),
    dict(shrink_factor=1.0),
    dict(resample='cubic-ish'),
    dict(max_dimension_shrinks=-1),
])
def test_invalid_config(kwargs):
    with pytest.raises(ValueError):
        CompressionConfig(**kwargs)


def test_tall_source_is_clamped_to_size_limit():
    result, encoder = compress(make_source(10, 1000), lambda *a: 10, max_dimension=2000)
    assert (result.width, result.height) == (20, 2000)
    assert encoder.calls[0][2:4] == (20, 2000)


def test_tall_source_default_limit_is_jpeg_height():
    config = CompressionConfig()
    compressor = AdaptiveCompressor(config, StubEncoder(lambda *a: 10))
    assert compressor._size_limit() == 65500


def test_encoder_rejecting_a_size_falls_back_to_shrinking():
    class HeightLimitedEncoder(StubEncoder):
        def encode(self, img, fmt, quality):
            if img.size[1] > 1500:
                raise OSError('image too large for encoder')
            return super().encode(img, fmt, quality)

    encoder = HeightLimitedEncoder(lambda *a: 10)
    compressor = AdaptiveCompressor(CompressionConfig(max_dimension=2000), encoder)
    result = compressor.compress_image(make_source(10, 1000))
    assert (result.width, result.height) == (14, 1400)
    assert result.byte_size == 10


def test_aspect_ratio_too_extreme_for_any_size():
    encoder = StubEncoder(lambda *a: 10)
    with pytest.raises(InvalidDimensions):
        AdaptiveCompressor(CompressionConfig(), encoder).compress_image(make_source(1, 100000))
    assert encoder.calls == []
