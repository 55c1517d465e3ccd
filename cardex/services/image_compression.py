"""
Image re-encoding used to keep card images small.

`compress` downscales (never upscales) an image to fit a bounding box,
preserving its aspect ratio, and re-encodes it as JPEG. `fit_within_budget`
applies the fixed two-pass policy used before a card image is stored.
"""

import base64
import io
import logging
import math
from dataclasses import dataclass
from typing import Tuple, Union

from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import ImageProcessingError
from .blob_storage import decode_payload

logger = logging.getLogger(__name__)

ImageInput = Union[bytes, str]


@dataclass(frozen=True)
class CompressionPass:
    max_width: int
    max_height: int
    quality: float


# --- Policy ---
INLINE_BUDGET_BYTES = 800_000
FIRST_PASS = CompressionPass(400, 560, 0.7)
SECOND_PASS = CompressionPass(300, 420, 0.5)
# --- End Policy ---


@dataclass(frozen=True)
class CompressionOutcome:
    data: bytes
    original_size: int
    passes: int
    within_budget: bool

    @property
    def size(self) -> int:
        return len(self.data)


def base64_size(encoded: str) -> int:
    """Size in bytes of the data carried by a base64 string or data URL."""
    data = encoded.split(",", 1)[1] if "," in encoded else encoded
    padding = 2 if data.endswith("==") else 1 if data.endswith("=") else 0
    return (len(data) * 3) // 4 - padding


def format_bytes(size: int) -> str:
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    exponent = min(int(math.log(size, 1024)), len(units) - 1)
    return f"{round(size / 1024 ** exponent, 2):g} {units[exponent]}"


def _fit_box(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    scale = min(max_width / width, max_height / height, 1.0)
    return max(1, round(width * scale)), max(1, round(height * scale))


def _to_rgb(img: Image.Image) -> Image.Image:
    """JPEG has no alpha channel; flatten transparent images onto white."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


def _compress_bytes(raw: bytes, max_width: int, max_height: int, quality: float) -> bytes:
    try:
        with Image.open(io.BytesIO(raw)) as opened:
            img = ImageOps.exif_transpose(opened)
            img = _to_rgb(img)
            target = _fit_box(img.width, img.height, max_width, max_height)
            if target != img.size:
                img = img.resize(target, Image.Resampling.LANCZOS)
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=max(1, min(95, round(quality * 100))), optimize=True)
            return out.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageProcessingError("Failed to process the image.", detail=str(e)) from e


def compress(
    image: ImageInput,
    max_width: int = 512,
    max_height: int = 712,
    quality: float = 0.8,
) -> ImageInput:
    """
    Downscales `image` to fit within `max_width` x `max_height` and re-encodes
    it as JPEG at `quality` (0-1).

    Bytes in give bytes out; a data URL gives a JPEG data URL; a bare base64
    string gives a bare base64 string.
    """
    if isinstance(image, (bytes, bytearray)):
        return _compress_bytes(bytes(image), max_width, max_height, quality)

    raw, _ = decode_payload(image)
    encoded = base64.b64encode(_compress_bytes(raw, max_width, max_height, quality)).decode("ascii")
    if image.startswith("data:"):
        return f"data:image/jpeg;base64,{encoded}"
    return encoded


def fit_within_budget(raw: bytes, budget: int = INLINE_BUDGET_BYTES) -> CompressionOutcome:
    """
    Applies the two-pass policy to an image that may exceed `budget`.

    Images within budget are returned untouched. Otherwise the first pass is
    applied to the original; if that is still over budget the second, more
    aggressive pass is applied to the original. The result is returned either
    way: a residual oversize is logged, not raised.
    """
    original_size = len(raw)
    if original_size <= budget:
        return CompressionOutcome(raw, original_size, passes=0, within_budget=True)

    logger.info("Image of %s exceeds %s; compressing.", format_bytes(original_size), format_bytes(budget))
    first = _compress_bytes(raw, FIRST_PASS.max_width, FIRST_PASS.max_height, FIRST_PASS.quality)
    logger.info("Compressed image size (first pass): %s", format_bytes(len(first)))
    if len(first) <= budget:
        return CompressionOutcome(first, original_size, passes=1, within_budget=True)

    second = _compress_bytes(raw, SECOND_PASS.max_width, SECOND_PASS.max_height, SECOND_PASS.quality)
    within = len(second) <= budget
    if within:
        logger.info("Compressed image size (second pass): %s", format_bytes(len(second)))
    else:
        logger.warning(
            "Image is still %s after both compression passes; storing it anyway.",
            format_bytes(len(second)),
        )
    return CompressionOutcome(second, original_size, passes=2, within_budget=within)
