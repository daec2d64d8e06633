#!/usr/bin/env python3
"""
Budget Image Compressor - Resize to a fixed width and re-encode under a byte budget

Images are scaled to a target width (aspect ratio preserved), encoded as PNG/WebP
when they carry transparency and as JPEG otherwise, and the encode quality and
then the pixel dimensions are searched until the output fits the byte budget.
"""

import os
import sys
import logging
import argparse
import mimetypes
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from io import BytesIO
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np
from PIL import Image, ImageColor, ImageOps

from budget_image_files import find_images, is_image_file

logger = logging.getLogger(__name__)


DEFAULT_TARGET_WIDTH = 825
DEFAULT_MAX_BYTES = 100 * 1024

RESAMPLE_FILTERS = {
    'nearest': Image.Resampling.NEAREST,
    'bilinear': Image.Resampling.BILINEAR,
    'bicubic': Image.Resampling.BICUBIC,
    'lanczos': Image.Resampling.LANCZOS,
}


# ----- Errors -----

class CompressionError(Exception):
    """Base class for failures that are local to one image."""


class DecodeFailed(CompressionError):
    pass


class InvalidDimensions(CompressionError):
    pass


class EncodeFailed(CompressionError):
    pass


class Cancelled(CompressionError):
    pass


class CompressionInfeasible(CompressionError):
    """The search ran out of qualities and sizes without meeting the budget.

    Attributes:
        max_bytes: The budget that could not be met
        smallest_size: Smallest encode produced during the search, in bytes
        last_quality: Quality of the last encode tried
        last_size: (width, height) of the last encode tried
    """

    def __init__(self, max_bytes: int, smallest_size: Optional[int],
                 last_quality: Optional[float], last_size: Optional[Tuple[int, int]]):
        self.max_bytes = max_bytes
        self.smallest_size = smallest_size
        self.last_quality = last_quality
        self.last_size = last_size

        message = f"could not fit under {max_bytes} bytes"
        if smallest_size is not None:
            message += f"; smallest encode was {smallest_size} bytes"
        if last_quality is not None and last_size is not None:
            message += (f" (last tried quality {last_quality:.3f} "
                        f"at {last_size[0]}x{last_size[1]})")
        super().__init__(message)


# ----- Data model -----

class OutputFormat(Enum):
    JPEG = 'JPEG'
    PNG = 'PNG'
    WEBP = 'WEBP'

    @classmethod
    def parse(cls, name: str) -> 'OutputFormat':
        key = name.strip().upper()
        if key == 'JPG':
            key = 'JPEG'
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"unknown output format: {name!r}") from None

    @property
    def extension(self) -> str:
        return _FORMAT_INFO[self]['extension']

    @property
    def mime_type(self) -> str:
        return _FORMAT_INFO[self]['mime_type']

    @property
    def supports_alpha(self) -> bool:
        return _FORMAT_INFO[self]['alpha']

    @property
    def has_quality(self) -> bool:
        """False for encoders with no continuous quality knob."""
        return _FORMAT_INFO[self]['quality']

    @property
    def max_dimension(self) -> int:
        """Largest width or height the encoder accepts."""
        return _FORMAT_INFO[self]['max_dimension']


_FORMAT_INFO = {
    OutputFormat.JPEG: {'extension': '.jpg', 'mime_type': 'image/jpeg', 'alpha': False,
                        'quality': True, 'max_dimension': 65500},
    OutputFormat.PNG: {'extension': '.png', 'mime_type': 'image/png', 'alpha': True,
                       'quality': False, 'max_dimension': 65535},
    OutputFormat.WEBP: {'extension': '.webp', 'mime_type': 'image/webp', 'alpha': True,
                        'quality': True, 'max_dimension': 16383},
}


@dataclass(frozen=True)
class CompressionConfig:
    """
    All knobs of one compression run.

    Qualities are in [0, 1]; the encoder maps them onto its own scale.
    """

    # ----- Size -----
    target_width: int = DEFAULT_TARGET_WIDTH
    max_bytes: int = DEFAULT_MAX_BYTES
    # Extra cap on either side, on top of the output formats' own limits
    max_dimension: Optional[int] = None

    # ----- Quality search -----
    min_quality: float = 0.2
    max_quality: float = 1.0
    max_search_iterations: int = 10
    quality_epsilon: float = 0.01

    # ----- Dimension shrink fallback -----
    shrink_factor: float = 0.85
    max_dimension_shrinks: int = 6

    # ----- Formats -----
    translucent_format: OutputFormat = OutputFormat.PNG
    opaque_format: OutputFormat = OutputFormat.JPEG

    # Flatten translucent images onto background_color and retry as
    # opaque_format when nothing else fits.
    allow_alpha_to_opaque_fallback: bool = False
    background_color: Tuple[int, int, int] = (255, 255, 255)

    resample: str = 'lanczos'
    encode_retries: int = 2
    # JPEG sources cannot carry alpha, so their scan is skipped
    skip_scan_for_opaque_sources: bool = True

    def __post_init__(self):
        if self.target_width < 1:
            raise ValueError(f"target_width must be positive, got {self.target_width}")
        if self.max_bytes < 1:
            raise ValueError(f"max_bytes must be positive, got {self.max_bytes}")
        if self.max_dimension is not None and self.max_dimension < 1:
            raise ValueError(f"max_dimension must be positive, got {self.max_dimension}")
        if not 0 < self.max_quality <= 1:
            raise ValueError(f"max_quality must be in (0, 1], got {self.max_quality}")
        if not 0 < self.min_quality <= self.max_quality:
            raise ValueError(f"min_quality must be in (0, max_quality], got {self.min_quality}")
        if self.max_search_iterations < 0:
            raise ValueError("max_search_iterations must not be negative")
        if self.quality_epsilon <= 0:
            raise ValueError("quality_epsilon must be positive")
        if not 0 < self.shrink_factor < 1:
            raise ValueError(f"shrink_factor must be in (0, 1), got {self.shrink_factor}")
        if self.max_dimension_shrinks < 0:
            raise ValueError("max_dimension_shrinks must not be negative")
        if not self.translucent_format.supports_alpha:
            raise ValueError(f"{self.translucent_format.value} cannot store transparency")
        if self.resample not in RESAMPLE_FILTERS:
            raise ValueError(f"unknown resample filter: {self.resample!r}")
        if self.encode_retries < 0:
            raise ValueError("encode_retries must not be negative")


@dataclass(frozen=True)
class SourceImage:
    """Decoded source pixels, normalised to RGB or RGBA."""
    pixels: Image.Image
    width: int
    height: int
    channels: int
    source_format: Optional[str] = None
    mime_type: Optional[str] = None


@dataclass
class EncodeAttempt:
    quality: float
    width: int
    height: int
    produced_bytes: Optional[bytes] = None

    @property
    def byte_size(self) -> Optional[int]:
        if self.produced_bytes is None:
            return None
        return len(self.produced_bytes)


@dataclass(frozen=True)
class EncodedResult:
    """A successful encode that fits the budget. The caller owns it."""
    data: bytes = field(repr=False)
    format: OutputFormat
    width: int
    height: int
    byte_size: int
    quality: float
    attempts: int = 0
    alpha_flattened: bool = False

    @property
    def extension(self) -> str:
        return self.format.extension

    @property
    def mime_type(self) -> str:
        return self.format.mime_type

    @property
    def size_kb(self) -> float:
        return self.byte_size / 1024.0

    def save(self, path: str) -> None:
        with open(path, 'wb') as f:
            f.write(self.data)


# ----- Decode / geometry -----

def _needs_alpha(img: Image.Image) -> bool:
    if img.mode in ['RGBA', 'LA', 'PA', 'RGBa', 'La']:
        return True
    # Palette and colour-keyed images keep transparency in the info dict
    return 'transparency' in img.info


def decode_image(data: bytes, mime_type: Optional[str] = None) -> SourceImage:
    """
    Decode raw bytes into a SourceImage.

    EXIF orientation is applied, and the pixels are converted to RGBA when the
    source can carry transparency, RGB otherwise.

    Raises:
        DecodeFailed: if the bytes are empty, declared as a non-image MIME type,
            or not decodable by Pillow
    """
    if mime_type and not mime_type.startswith('image/'):
        raise DecodeFailed(f"not an image MIME type: {mime_type}")
    if not data:
        raise DecodeFailed("empty input")

    try:
        with Image.open(BytesIO(data)) as img:
            img.load()
            source_format = img.format
            oriented = ImageOps.exif_transpose(img)
            pixels = oriented.convert('RGBA' if _needs_alpha(oriented) else 'RGB')
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        raise DecodeFailed(f"could not decode image: {exc}") from exc

    width, height = pixels.size
    return SourceImage(
        pixels=pixels,
        width=width,
        height=height,
        channels=len(pixels.getbands()),
        source_format=source_format,
        mime_type=mime_type,
    )


def resolve_target_size(source_width: int, source_height: int,
                        target_width: int) -> Tuple[int, int]:
    """Target (width, height) keeping the source aspect ratio; height rounds half up, min 1."""
    if source_width <= 0 or source_height <= 0:
        raise InvalidDimensions(f"source image has no area: {source_width}x{source_height}")
    if target_width <= 0:
        raise InvalidDimensions(f"target width must be positive, got {target_width}")

    # Integer arithmetic so the rounding does not depend on float error
    height = (2 * target_width * source_height + source_width) // (2 * source_width)
    return target_width, max(1, height)


def shrink_size(source_width: int, source_height: int, width: int,
                factor: float) -> Tuple[int, int]:
    """Next smaller size: width times factor, height from the original aspect ratio."""
    new_width = max(1, int(width * factor))
    if new_width >= width and width > 1:
        new_width = width - 1
    return resolve_target_size(source_width, source_height, new_width)


def fit_within(source_width: int, source_height: int, width: int, height: int,
               limit: int) -> Tuple[int, int]:
    """
    Shrink (width, height) until neither side exceeds *limit*, keeping the source aspect ratio.

    Raises:
        InvalidDimensions: if the aspect ratio is too extreme for any size within the limit
    """
    if width > limit:
        width, height = resolve_target_size(source_width, source_height, limit)
    if height > limit:
        narrower = limit * source_width // source_height
        if narrower < 1:
            raise InvalidDimensions(
                f"{source_width}x{source_height} cannot be scaled to fit {limit}px")
        width, height = resolve_target_size(source_width, source_height, narrower)
    return width, height


def resample_image(img: Image.Image, width: int, height: int,
                   method: str = 'lanczos') -> Image.Image:
    if img.size == (width, height):
        return img
    return img.resize((width, height), RESAMPLE_FILTERS[method])


def flatten_alpha(img: Image.Image,
                  background: Tuple[int, int, int] = (255, 255, 255)) -> Image.Image:
    """Composite *img* onto a solid background and drop the alpha channel."""
    if 'A' not in img.getbands():
        return img.convert('RGB')
    canvas = Image.new('RGBA', img.size, tuple(background) + (255,))
    canvas.alpha_composite(img.convert('RGBA'))
    return canvas.convert('RGB')


# ----- Transparency / format -----

class TransparencyClassifier:
    """Decide whether pixels need an alpha-capable output format."""

    @staticmethod
    def has_transparency(img: Image.Image, band_rows: int = 64) -> bool:
        """
        True iff any pixel has alpha below 255.

        Every pixel is checked; the alpha plane is scanned in bands of rows so
        the scan stops at the first band holding a transparent pixel.
        """
        if 'A' not in img.getbands():
            return False

        alpha = np.asarray(img.getchannel('A'))
        for start in range(0, alpha.shape[0], band_rows):
            if (alpha[start:start + band_rows] < 255).any():
                return True
        return False

    @staticmethod
    def classify(source: SourceImage, resized: Optional[Image.Image] = None,
                 skip_opaque_sources: bool = True) -> bool:
        """
        Translucent if the source or the resampled pixels hold any alpha below 255.

        The source is scanned too: a large downscale can average a lone
        transparent pixel back up to full opacity.
        """
        if skip_opaque_sources and source.source_format == 'JPEG':
            return False
        if TransparencyClassifier.has_transparency(source.pixels):
            return True
        return resized is not None and TransparencyClassifier.has_transparency(resized)


def select_format(translucent: bool, config: CompressionConfig) -> OutputFormat:
    return config.translucent_format if translucent else config.opaque_format


# ----- Encoder -----

class PillowEncoder:
    """Encode Pillow images to bytes with Pillow's codecs."""

    def __init__(self, jpeg_progressive: bool = True, png_compress_level: int = 9,
                 webp_method: int = 4):
        self.jpeg_progressive = jpeg_progressive
        self.png_compress_level = png_compress_level
        self.webp_method = webp_method

    @staticmethod
    def pil_quality(quality: float) -> int:
        """Map a [0, 1] quality onto Pillow's 1-100 scale."""
        return max(1, min(100, int(quality * 100 + 0.5)))

    def encode(self, img: Image.Image, fmt: OutputFormat, quality: float) -> bytes:
        format_methods = {
            OutputFormat.JPEG: self._encode_jpeg,
            OutputFormat.PNG: self._encode_png,
            OutputFormat.WEBP: self._encode_webp,
        }
        buf = BytesIO()
        format_methods[fmt](img, buf, quality)
        return buf.getvalue()

    def _encode_jpeg(self, img: Image.Image, buf: BytesIO, quality: float) -> None:
        # Only fully opaque pixels reach here, so dropping alpha is lossless
        if img.mode != 'RGB':
            rgb_img = img.convert('RGB')
        else:
            rgb_img = img

        save_params = {
            'format': 'JPEG',
            'quality': self.pil_quality(quality),
            'optimize': True,
            'progressive': self.jpeg_progressive,
        }
        rgb_img.save(buf, **save_params)

    def _encode_png(self, img: Image.Image, buf: BytesIO, quality: float) -> None:
        # PNG is lossless: quality has no effect
        save_params = {
            'format': 'PNG',
            'optimize': True,
            'compress_level': self.png_compress_level,
        }
        img.save(buf, **save_params)

    def _encode_webp(self, img: Image.Image, buf: BytesIO, quality: float) -> None:
        save_params = {
            'format': 'WEBP',
            'quality': self.pil_quality(quality),
            'lossless': False,
            'method': self.webp_method,
        }
        img.save(buf, **save_params)


# ----- Adaptive search -----

class _SearchLog:
    """Per-call bookkeeping; never shared between invocations."""

    def __init__(self):
        self.encodes = 0
        self.smallest_size: Optional[int] = None
        self.last_attempt: Optional[EncodeAttempt] = None
        self.encode_error: Optional[EncodeFailed] = None

    def record(self, attempt: EncodeAttempt) -> None:
        self.encodes += 1
        self.last_attempt = attempt
        if self.smallest_size is None or attempt.byte_size < self.smallest_size:
            self.smallest_size = attempt.byte_size


def _preference(attempt: EncodeAttempt) -> Tuple[float, int, int]:
    # Higher quality, then larger area, then smaller output
    return (attempt.quality, attempt.width * attempt.height, -attempt.byte_size)


def _check_cancelled(cancel_token) -> None:
    if cancel_token is not None and cancel_token.is_set():
        raise Cancelled("compression cancelled")


class AdaptiveCompressor:
    """
    Resize and re-encode images under a byte budget.

    The compressor holds only its configuration and encoder, so one instance
    can serve many threads at once.
    """

    def __init__(self, config: Optional[CompressionConfig] = None, encoder=None):
        self.config = config or CompressionConfig()
        self.encoder = encoder or PillowEncoder()
        self.classifier = TransparencyClassifier()

    def compress_file(self, path: str, cancel_token=None) -> EncodedResult:
        try:
            with open(path, 'rb') as f:
                data = f.read()
        except OSError as exc:
            raise DecodeFailed(f"could not read {path}: {exc}") from exc
        mime_type, _ = mimetypes.guess_type(path)
        if mime_type and not mime_type.startswith('image/'):
            # Extension says otherwise; let the decoder judge the content
            mime_type = None
        return self.compress_bytes(data, mime_type=mime_type, cancel_token=cancel_token)

    def compress_bytes(self, data: bytes, mime_type: Optional[str] = None,
                       cancel_token=None) -> EncodedResult:
        source = decode_image(data, mime_type)
        return self.compress_image(source, cancel_token=cancel_token)

    def compress_image(self, source: SourceImage, cancel_token=None) -> EncodedResult:
        """
        Run the full pipeline on a decoded image.

        Returns:
            EncodedResult whose byte_size never exceeds config.max_bytes

        Raises:
            InvalidDimensions, EncodeFailed, CompressionInfeasible, Cancelled
        """
        config = self.config
        _check_cancelled(cancel_token)

        width, height = resolve_target_size(source.width, source.height, config.target_width)
        width, height = fit_within(source.width, source.height, width, height,
                                   self._size_limit())
        resized = resample_image(source.pixels, width, height, config.resample)

        translucent = self.classifier.classify(
            source, resized, config.skip_scan_for_opaque_sources)
        fmt = select_format(translucent, config)
        logger.debug("%dx%d -> %dx%d, translucent=%s, format=%s",
                     source.width, source.height, width, height, translucent, fmt.value)

        log = _SearchLog()
        best = self._search(source.pixels, resized, fmt, log, cancel_token)
        flattened = False

        if best is None and translucent and config.allow_alpha_to_opaque_fallback:
            logger.info("%s cannot reach %d bytes; flattening alpha and retrying as %s",
                        fmt.value, config.max_bytes, config.opaque_format.value)
            flat = flatten_alpha(source.pixels, config.background_color)
            flat_resized = resample_image(flat, width, height, config.resample)
            fmt = config.opaque_format
            best = self._search(flat, flat_resized, fmt, log, cancel_token)
            flattened = True

        if best is None and log.encodes == 0 and log.encode_error is not None:
            raise log.encode_error
        if best is None:
            last = log.last_attempt
            raise CompressionInfeasible(
                config.max_bytes,
                log.smallest_size,
                last.quality if last else None,
                (last.width, last.height) if last else None,
            )

        logger.info("Encoded %s %dx%d at quality %.3f: %d bytes after %d encodes",
                    fmt.value, best.width, best.height, best.quality,
                    best.byte_size, log.encodes)
        return EncodedResult(
            data=best.produced_bytes,
            format=fmt,
            width=best.width,
            height=best.height,
            byte_size=best.byte_size,
            quality=best.quality,
            attempts=log.encodes,
            alpha_flattened=flattened,
        )

    def _search(self, pixels: Image.Image, resized: Image.Image, fmt: OutputFormat,
                log: _SearchLog, cancel_token) -> Optional[EncodeAttempt]:
        """Quality search at the target size, then at successively smaller sizes."""
        config = self.config
        source_width, source_height = pixels.size
        width, height = resized.size

        for shrink in range(config.max_dimension_shrinks + 1):
            if shrink:
                smaller = shrink_size(source_width, source_height, width, config.shrink_factor)
                if smaller == (width, height):
                    break  # 1px wide, nothing left to shrink
                width, height = smaller
                logger.debug("Shrinking to %dx%d (shrink %d/%d)",
                             width, height, shrink, config.max_dimension_shrinks)
                resized = resample_image(pixels, width, height, config.resample)

            try:
                best = self._search_quality(resized, fmt, log, cancel_token)
            except EncodeFailed as exc:
                # Encoders reject some sizes outright; a smaller one may still work
                logger.warning("No %s encode at %dx%d: %s", fmt.value, width, height, exc)
                log.encode_error = exc
                continue
            if best is not None:
                return best

        return None

    def _size_limit(self) -> int:
        """Largest side either candidate output format can take."""
        config = self.config
        limit = min(config.translucent_format.max_dimension,
                    config.opaque_format.max_dimension)
        if config.max_dimension is not None:
            limit = min(limit, config.max_dimension)
        return limit

    def _search_quality(self, img: Image.Image, fmt: OutputFormat,
                        log: _SearchLog, cancel_token) -> Optional[EncodeAttempt]:
        """Best feasible encode of *img* at its current size, or None."""
        config = self.config
        hi = config.max_quality

        top = self._encode(img, fmt, hi, log, cancel_token)
        if self._fits(top):
            return top
        if not fmt.has_quality:
            return None

        lo = config.min_quality
        if lo >= hi:
            return None
        floor = self._encode(img, fmt, lo, log, cancel_token)
        if not self._fits(floor):
            return None

        best = floor
        for _ in range(config.max_search_iterations):
            if hi - lo < config.quality_epsilon:
                break
            mid = (lo + hi) / 2
            attempt = self._encode(img, fmt, mid, log, cancel_token)
            if self._fits(attempt):
                best = max(best, attempt, key=_preference)
                lo = mid
            else:
                hi = mid
        return best

    def _fits(self, attempt: EncodeAttempt) -> bool:
        return attempt.byte_size <= self.config.max_bytes

    def _encode(self, img: Image.Image, fmt: OutputFormat, quality: float,
                log: _SearchLog, cancel_token) -> EncodeAttempt:
        """One encode, retrying transient encoder failures."""
        width, height = img.size
        last_error = None

        for _ in range(self.config.encode_retries + 1):
            _check_cancelled(cancel_token)
            try:
                data = self.encoder.encode(img, fmt, quality)
            except (OSError, ValueError) as exc:
                last_error = exc
                logger.warning("%s encode at %dx%d failed: %s", fmt.value, width, height, exc)
                continue
            if not data:
                last_error = None
                logger.warning("%s encode at %dx%d produced no output", fmt.value, width, height)
                continue

            attempt = EncodeAttempt(quality, width, height, data)
            log.record(attempt)
            logger.debug("%s q=%.3f %dx%d -> %d bytes",
                         fmt.value, quality, width, height, attempt.byte_size)
            return attempt

        message = f"{fmt.value} encoder failed at {width}x{height}, quality {quality:.3f}"
        if last_error is not None:
            raise EncodeFailed(f"{message}: {last_error}") from last_error
        raise EncodeFailed(message)


def compress_image_bytes(data: bytes, config: Optional[CompressionConfig] = None,
                         mime_type: Optional[str] = None, cancel_token=None,
                         encoder=None) -> EncodedResult:
    """Resize and re-encode *data* to fit ``config.max_bytes``."""
    compressor = AdaptiveCompressor(config, encoder)
    return compressor.compress_bytes(data, mime_type=mime_type, cancel_token=cancel_token)


# ----- Batch -----

@dataclass
class BatchReport:
    """Per-image outcomes of a batch, in submission order."""
    successes: List[Tuple[str, EncodedResult]] = field(default_factory=list)
    failures: List[Tuple[str, CompressionError]] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(result.byte_size for _, result in self.successes)


def _run_batch(jobs: List[Tuple[str, Callable[[], EncodedResult]]],
               max_workers: int) -> BatchReport:
    report = BatchReport()
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [(name, pool.submit(job)) for name, job in jobs]
        for name, future in futures:
            try:
                report.successes.append((name, future.result()))
            except CompressionError as exc:
                logger.warning("Failed to compress %s: %s", name, exc)
                report.failures.append((name, exc))
    return report


def compress_batch(items: Iterable[Tuple[str, bytes]],
                   config: Optional[CompressionConfig] = None,
                   max_workers: int = 4, cancel_token=None, encoder=None) -> BatchReport:
    """
    Compress independent (name, bytes) items concurrently.

    A failing image lands in ``failures`` and never stops its siblings.
    """
    compressor = AdaptiveCompressor(config, encoder)
    jobs = []
    for name, data in items:
        mime_type, _ = mimetypes.guess_type(name)
        jobs.append((name, lambda data=data, mime_type=mime_type:
                     compressor.compress_bytes(data, mime_type, cancel_token)))
    return _run_batch(jobs, max_workers)


def compress_paths(paths: Iterable[str], config: Optional[CompressionConfig] = None,
                   max_workers: int = 4, cancel_token=None, encoder=None) -> BatchReport:
    compressor = AdaptiveCompressor(config, encoder)
    jobs = [(path, lambda path=path: compressor.compress_file(path, cancel_token))
            for path in paths]
    return _run_batch(jobs, max_workers)


# ----- Command line -----

def get_file_size_kb(file_path: str) -> float:
    """Get file size in kilobytes."""
    return os.path.getsize(file_path) / 1024.0


def collect_inputs(inputs: List[str]) -> List[Tuple[str, str]]:
    """
    Expand files and directories into (path, output-relative path) pairs.

    Raises:
        FileNotFoundError: if an input does not exist
    """
    entries = []
    for item in inputs:
        if os.path.isdir(item):
            for path in find_images(item):
                entries.append((path, os.path.relpath(path, item)))
        elif os.path.isfile(item):
            entries.append((item, os.path.basename(item)))
        else:
            raise FileNotFoundError(item)
    return entries


def output_path_for(output_dir: str, relative_path: str, result: EncodedResult,
                    suffix: str = '-resized', taken: Optional[set] = None) -> str:
    """
    Output file for one result: ``<stem><suffix><format extension>``.

    Paths already in *taken* are avoided by keeping the source extension in
    the stem (``photo_png-resized.jpg``), then by numbering. The chosen path
    is added to *taken*.
    """
    stem, source_ext = os.path.splitext(relative_path)
    candidates = [stem]
    if source_ext:
        candidates.append(f"{stem}_{source_ext.lstrip('.').lower()}")

    names = (os.path.join(output_dir, candidate + suffix + result.extension)
             for candidate in candidates)
    if taken is None:
        return next(names)

    path = next((name for name in names if os.path.normcase(name) not in taken), None)
    counter = 2
    while path is None:
        name = os.path.join(output_dir, f"{candidates[-1]}_{counter}{suffix}{result.extension}")
        if os.path.normcase(name) not in taken:
            path = name
        counter += 1
    taken.add(os.path.normcase(path))
    return path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Resize images to a fixed width and re-encode them under a byte budget',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s photo.jpg -o out
  %(prog)s input_folder -o out --max-kb 50
  %(prog)s input_folder -o out --width 1200 --translucent-format webp
  %(prog)s logo.png -o out --alpha-fallback --background white
        """
    )

    parser.add_argument('inputs', nargs='+', help='Image files or directories')
    parser.add_argument('-o', '--output-dir', default='.', help='Directory for the results')
    parser.add_argument('--width', type=int, default=DEFAULT_TARGET_WIDTH,
                        help='Target width in pixels (default: %(default)s)')
    parser.add_argument('--max-kb', type=float, default=DEFAULT_MAX_BYTES / 1024,
                        help='Byte budget per image in KB (default: %(default)s)')
    parser.add_argument('--min-quality', type=float, default=0.2,
                        help='Lowest quality tried, 0-1 (default: %(default)s)')
    parser.add_argument('--iterations', type=int, default=10,
                        help='Binary search iterations per size (default: %(default)s)')
    parser.add_argument('--shrink-factor', type=float, default=0.85,
                        help='Dimension shrink per fallback step (default: %(default)s)')
    parser.add_argument('--max-shrinks', type=int, default=6,
                        help='Maximum dimension shrinks (default: %(default)s)')
    parser.add_argument('--translucent-format', default='png', choices=['png', 'webp'],
                        help='Format for images with transparency')
    parser.add_argument('--opaque-format', default='jpeg', choices=['jpeg', 'jpg', 'webp'],
                        help='Format for opaque images')
    parser.add_argument('--alpha-fallback', action='store_true',
                        help='Flatten translucent images onto --background when they cannot fit')
    parser.add_argument('--background', default='white',
                        help='Background colour for --alpha-fallback (name or #rrggbb)')
    parser.add_argument('--resample', default='lanczos', choices=sorted(RESAMPLE_FILTERS),
                        help='Resampling filter')
    parser.add_argument('--suffix', default='-resized',
                        help='Appended to output file names (default: %(default)s)')
    parser.add_argument('--workers', type=int, default=4,
                        help='Images compressed in parallel (default: %(default)s)')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='More logging (-vv for every encode attempt)')
    return parser


def config_from_args(args: argparse.Namespace) -> CompressionConfig:
    """Build a CompressionConfig from parsed arguments. Raises ValueError on bad values."""
    return CompressionConfig(
        target_width=args.width,
        max_bytes=int(args.max_kb * 1024),
        min_quality=args.min_quality,
        max_search_iterations=args.iterations,
        shrink_factor=args.shrink_factor,
        max_dimension_shrinks=args.max_shrinks,
        translucent_format=OutputFormat.parse(args.translucent_format),
        opaque_format=OutputFormat.parse(args.opaque_format),
        allow_alpha_to_opaque_fallback=args.alpha_fallback,
        background_color=ImageColor.getrgb(args.background)[:3],
        resample=args.resample,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main function with command line interface."""
    parser = build_parser()
    args = parser.parse_args(argv)

    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=level, format='%(levelname)s %(name)s: %(message)s')

    if args.workers < 1:
        parser.error("--workers must be at least 1")
    try:
        config = config_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        entries = collect_inputs(args.inputs)
    except FileNotFoundError as exc:
        parser.error(f"input does not exist: {exc}")

    for path, _ in entries:
        if not is_image_file(path):
            logger.info("%s has no image extension; trying to decode it anyway", path)

    if not entries:
        print("No images were processed.")
        return 1

    os.makedirs(args.output_dir, exist_ok=True)

    print(f"{'='*60}")
    print("BUDGET IMAGE COMPRESSION")
    print(f"{'='*60}")
    print(f"Images: {len(entries)}")
    print(f"Target width: {config.target_width}px")
    print(f"Budget: {config.max_bytes / 1024:.1f}KB per image")
    print(f"Formats: {config.opaque_format.value} (opaque), "
          f"{config.translucent_format.value} (transparent)")
    print(f"{'='*60}")

    relative = dict(entries)
    report = compress_paths([path for path, _ in entries], config, max_workers=args.workers)

    total_original_size = 0.0
    total_new_size = 0.0
    taken = set()
    for path, result in report.successes:
        out_path = output_path_for(args.output_dir, relative[path], result, args.suffix, taken)
        os.makedirs(os.path.dirname(out_path) or '.', exist_ok=True)
        result.save(out_path)

        original_size_kb = get_file_size_kb(path)
        total_original_size += original_size_kb
        total_new_size += result.size_kb
        print(f"✅ {relative[path]} -> {os.path.relpath(out_path, args.output_dir)}: "
              f"{result.format.value} {result.width}x{result.height}, "
              f"q={result.quality:.2f}, {original_size_kb:.1f}KB -> {result.size_kb:.1f}KB")

    for path, exc in report.failures:
        print(f"❌ {relative[path]}: {type(exc).__name__}: {exc}")

    print(f"\n{'='*60}")
    print(f"Files processed: {len(report.successes)}")
    print(f"Errors: {len(report.failures)}")
    if report.successes:
        print(f"Total size: {total_original_size:.1f}KB -> {total_new_size:.1f}KB")
    print(f"{'='*60}")

    return 1 if report.failures else 0


if __name__ == "__main__":
    sys.exit(main())
