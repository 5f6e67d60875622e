"""PNG encoding and source image decoding."""

import io

import numpy as np
from PIL import Image, UnidentifiedImageError

from engine.errors import EncodeFailed, ImageLoadFailed

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def as_rgba(image: np.ndarray) -> np.ndarray:
    """Validate a raster and promote it to (H, W, 4) uint8.

    RGB inputs get an opaque alpha channel; grayscale gets RGB replicated.

    Raises:
        ImageLoadFailed: Wrong dtype, unsupported shape, or zero size.
    """
    if not isinstance(image, np.ndarray):
        raise ImageLoadFailed(f"Expected ndarray, got {type(image).__name__}")
    if image.dtype != np.uint8:
        raise ImageLoadFailed(f"Expected uint8 pixels, got {image.dtype}")
    if image.ndim == 2:
        image = np.stack([image, image, image], axis=2)
    if image.ndim != 3 or image.shape[2] not in (3, 4):
        raise ImageLoadFailed(f"Unsupported image shape {image.shape}")
    if image.shape[0] == 0 or image.shape[1] == 0:
        raise ImageLoadFailed("Image has zero size")
    if image.shape[2] == 3:
        alpha = np.full(image.shape[:2] + (1,), 255, dtype=np.uint8)
        image = np.concatenate([image, alpha], axis=2)
    return image


def decode_image(data: bytes) -> np.ndarray:
    """Decode image bytes (any Pillow format) to RGBA uint8."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            rgba = img.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageLoadFailed(f"Could not decode image: {e}") from e
    return as_rgba(np.array(rgba))


def load_image(path: str) -> np.ndarray:
    """Read and decode an image file to RGBA uint8."""
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ImageLoadFailed(f"Could not read image: {type(e).__name__}") from e
    return decode_image(data)


def encode_png(frame: np.ndarray) -> bytes:
    """Encode RGBA frame to PNG bytes, alpha preserved.

    Pillow writes no timestamp chunks, so identical frames give identical bytes.
    """
    if frame.ndim != 3 or frame.shape[2] != 4 or frame.dtype != np.uint8:
        raise EncodeFailed(f"Expected (H, W, 4) uint8 frame, got {frame.shape}")
    try:
        img = Image.fromarray(np.ascontiguousarray(frame))
        buf = io.BytesIO()
        img.save(buf, format="PNG")
    except (OSError, ValueError, TypeError) as e:
        raise EncodeFailed(f"PNG encode failed: {e}") from e
    return buf.getvalue()
