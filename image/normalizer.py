"""Down-scale and re-encode images before they are sent to the provider.

Normalization only ever lowers cost and latency.  It must never make a request
fail, so every decode or transform problem degrades to returning the caller's
original reference untouched.
"""
from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

import httpx
from PIL import Image

logger = logging.getLogger(__name__)

DATA_URI_PATTERN = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,", re.IGNORECASE)
FORMAT_MIME = {"jpeg": "image/jpeg", "png": "image/png", "webp": "image/webp"}

Fetcher = Callable[[str], bytes]


class NormalizationError(ValueError):
    """Raised internally when a source cannot be decoded; never escapes ``normalize``."""


@dataclass(frozen=True)
class NormalizeOptions:
    max_width: int = 1024
    max_height: int = 1024
    quality: int = 85
    format: str = "jpeg"


@dataclass
class NormalizedImage:
    data: str
    width: int
    height: int
    format: str
    original_size: int
    optimized_size: int
    compression_ratio: float

    def as_dict(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "format": self.format,
            "original_size": self.original_size,
            "optimized_size": self.optimized_size,
            "compression_ratio": round(self.compression_ratio, 1),
        }


ImageResult = Union[NormalizedImage, str]


def fetch_remote(url: str, timeout: float = 20.0) -> bytes:
    """Download a remote image, fixing protocol-relative URLs."""

    if url.startswith("//"):
        url = "https:" + url
    response = httpx.get(url, timeout=timeout, follow_redirects=True)
    response.raise_for_status()
    return response.content


def is_remote(image_ref: str) -> bool:
    return image_ref.startswith(("http://", "https://", "//"))


def load_source_bytes(image_ref: str, fetch: Optional[Fetcher] = None) -> bytes:
    """Decode a data URI, download a URL or decode bare base64."""

    if DATA_URI_PATTERN.match(image_ref):
        encoded = DATA_URI_PATTERN.sub("", image_ref, count=1)
    elif is_remote(image_ref):
        payload = (fetch or fetch_remote)(image_ref)
        if not payload:
            raise NormalizationError("Fetched image is empty")
        return payload
    else:
        encoded = image_ref
    try:
        payload = base64.b64decode(encoded, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise NormalizationError(f"Failed to decode base64 image: {exc}") from exc
    if not payload:
        raise NormalizationError("Image buffer is empty")
    return payload


def _target_size(width: int, height: int, options: NormalizeOptions) -> Tuple[int, int]:
    scale = min(options.max_width / width, options.max_height / height, 1.0)
    return max(1, round(width * scale)), max(1, round(height * scale))


def _encode(image: Image.Image, options: NormalizeOptions) -> bytes:
    buffer = io.BytesIO()
    fmt = options.format.lower()
    if fmt == "jpeg":
        image.convert("RGB").save(buffer, format="JPEG", quality=options.quality, optimize=True)
    elif fmt == "png":
        image.save(buffer, format="PNG", optimize=True, compress_level=9)
    elif fmt == "webp":
        image.save(buffer, format="WEBP", quality=options.quality)
    else:
        raise NormalizationError(f"Unsupported target format: {options.format}")
    return buffer.getvalue()


def normalize(
    image_ref: str,
    options: NormalizeOptions = NormalizeOptions(),
    *,
    fetch: Optional[Fetcher] = None,
) -> ImageResult:
    """Return a bounded, re-encoded copy of ``image_ref`` or ``image_ref`` itself.

    The aspect ratio is preserved and small images are never upscaled.  Any
    failure (network, base64, corrupt bytes, unsupported format) is logged and
    the original reference is returned unmodified.
    """

    try:
        source = load_source_bytes(image_ref, fetch)
        original_size = len(source)
        with Image.open(io.BytesIO(source)) as opened:
            opened.load()
            if not opened.width or not opened.height:
                raise NormalizationError("Invalid image dimensions")
            width, height = _target_size(opened.width, opened.height, options)
            image = opened
            if (width, height) != opened.size:
                image = opened.resize((width, height), Image.LANCZOS)
            encoded = _encode(image, options)
        optimized_size = len(encoded)
        ratio = (1 - optimized_size / original_size) * 100
        mime = FORMAT_MIME[options.format.lower()]
        logger.info(
            "Normalized image %sx%s: %.1f KB -> %.1f KB (%.1f%% reduction)",
            width,
            height,
            original_size / 1024,
            optimized_size / 1024,
            ratio,
        )
        return NormalizedImage(
            data=f"data:{mime};base64,{base64.b64encode(encoded).decode('ascii')}",
            width=width,
            height=height,
            format=options.format.lower(),
            original_size=original_size,
            optimized_size=optimized_size,
            compression_ratio=ratio,
        )
    except Exception as exc:
        logger.warning("Image normalization failed, using original reference: %s", exc)
        return image_ref


def reference_of(result: ImageResult) -> str:
    """Return the reference to hand to the provider for a normalize() result."""

    if isinstance(result, NormalizedImage):
        return result.data
    return result


def normalize_pair(
    subject_ref: str,
    garment_ref: str,
    options: NormalizeOptions = NormalizeOptions(),
    *,
    fetch: Optional[Fetcher] = None,
) -> Tuple[ImageResult, ImageResult]:
    """Normalize the subject and garment images concurrently and wait for both."""

    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="normalize") as pool:
        subject_future = pool.submit(normalize, subject_ref, options, fetch=fetch)
        garment_future = pool.submit(normalize, garment_ref, options, fetch=fetch)
        return subject_future.result(), garment_future.result()


def compression_summary(subject: ImageResult, garment: ImageResult) -> dict:
    """Aggregate size statistics for cost-tracking logs."""

    stats = [item for item in (subject, garment) if isinstance(item, NormalizedImage)]
    original = sum(item.original_size for item in stats)
    optimized = sum(item.optimized_size for item in stats)
    savings = (1 - optimized / original) * 100 if original else 0.0
    return {
        "subject": subject.as_dict() if isinstance(subject, NormalizedImage) else None,
        "garment": garment.as_dict() if isinstance(garment, NormalizedImage) else None,
        "total_savings": round(savings, 1),
    }
