"""
Image helpers for the OCR tier.

- image_fingerprint: coarse sampled hash used for frame de-duplication
- upscale_image: enlarge small captures before local recognition

Recognition accuracy drops sharply for text under ~15-20px tall, so small
captures are upscaled with LANCZOS before local engines see them. Upscaling
is best-effort: any failure returns the original bytes.
"""

from __future__ import annotations

import io
import logging
import math

from PIL import Image

logger = logging.getLogger(__name__)

FINGERPRINT_STEP = 100
DEFAULT_MIN_SIZE = 300
DEFAULT_FACTOR = 2.0
MAX_FACTOR = 3.0


def image_fingerprint(data: bytes, step: int = FINGERPRINT_STEP) -> str:
    """Sampled 32-bit hash of every ``step``-th byte, as hex.

    Not cryptographic; cheap enough to run on every captured frame.
    """
    value = 0
    for byte in data[::step]:
        value = ((value << 5) - value + byte) & 0xFFFFFFFF
    return f"{len(data):x}-{value:08x}"


def upscale_factor(
    width: int,
    height: int,
    min_size: int = DEFAULT_MIN_SIZE,
    default_factor: float = DEFAULT_FACTOR,
    max_factor: float = MAX_FACTOR,
) -> float:
    """Scale factor for an image of ``width`` x ``height``; 1.0 means leave it alone."""
    smallest = min(width, height)
    if smallest <= 0 or smallest >= min_size:
        return 1.0
    wanted = max(default_factor, math.ceil(min_size / smallest))
    return float(min(max_factor, wanted))


def upscale_image(
    data: bytes,
    min_size: int = DEFAULT_MIN_SIZE,
    default_factor: float = DEFAULT_FACTOR,
    max_factor: float = MAX_FACTOR,
) -> bytes:
    """Return PNG bytes of the upscaled image, or ``data`` unchanged."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            factor = upscale_factor(img.width, img.height, min_size, default_factor, max_factor)
            if factor <= 1.0:
                return data
            size = (round(img.width * factor), round(img.height * factor))
            resized = img.convert("RGB").resize(size, Image.LANCZOS)
        out = io.BytesIO()
        resized.save(out, format="PNG")
        logger.debug("Upscaled capture %sx to %dx%d", factor, *size)
        return out.getvalue()
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        logger.warning("Upscaling failed, using original image: %s", e)
        return data
