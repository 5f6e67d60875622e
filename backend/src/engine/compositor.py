"""Layer compositor — draws RGBA layers onto a canvas with explicit blend state.

Blend mode and shadow are parameters of each draw_layer() call rather than
ambient canvas state, so nothing has to be reset between draws.

CRITICAL: All blend math uses float32 to avoid uint8 overflow/wrap.
Pixels are straight (non-premultiplied) RGBA.
"""

import logging

import numpy as np

from engine.errors import SurfaceUnavailable
from engine.shadow import ShadowParams, render_shadow_layer

logger = logging.getLogger(__name__)

# 64 MP — larger canvases are refused before allocation
MAX_CANVAS_PIXELS = 64_000_000


def _blend_normal(base: np.ndarray, layer: np.ndarray) -> np.ndarray:
    """Source-over with straight alpha."""
    sa = layer[:, :, 3:4] / 255.0
    da = base[:, :, 3:4] / 255.0
    out_a = sa + da * (1.0 - sa)
    weighted = layer[:, :, :3] * sa + base[:, :, :3] * da * (1.0 - sa)
    out_rgb = np.divide(
        weighted, out_a, out=np.zeros_like(weighted), where=out_a > 0
    )
    return np.concatenate([out_rgb, out_a * 255.0], axis=2)


def _blend_source_in(base: np.ndarray, layer: np.ndarray) -> np.ndarray:
    """Layer color, clipped to the coverage already on the canvas."""
    out_a = (layer[:, :, 3:4] / 255.0) * (base[:, :, 3:4] / 255.0)
    out_rgb = np.where(out_a > 0, layer[:, :, :3], 0.0)
    return np.concatenate([out_rgb, out_a * 255.0], axis=2)


BLEND_MODES = {
    "normal": _blend_normal,
    "source-in": _blend_source_in,
}


def new_canvas(width: int, height: int) -> np.ndarray:
    """Allocate a transparent RGBA canvas.

    Raises:
        SurfaceUnavailable: Non-positive size, over MAX_CANVAS_PIXELS, or
            allocation failure.
    """
    if width <= 0 or height <= 0:
        raise SurfaceUnavailable(f"Invalid canvas size {width}x{height}")
    if width * height > MAX_CANVAS_PIXELS:
        raise SurfaceUnavailable(
            f"Canvas {width}x{height} exceeds {MAX_CANVAS_PIXELS} pixels"
        )
    try:
        return np.zeros((height, width, 4), dtype=np.uint8)
    except MemoryError as e:
        raise SurfaceUnavailable(f"Could not allocate {width}x{height} canvas") from e


def place_layer(
    image: np.ndarray, canvas_shape: tuple[int, ...], offset: tuple[int, int]
) -> np.ndarray:
    """Return a canvas-sized RGBA layer with `image` at offset (x, y), clipped."""
    height, width = canvas_shape[:2]
    layer = np.zeros((height, width, 4), dtype=np.uint8)
    x, y = offset
    h, w = image.shape[:2]
    x0, y0 = max(x, 0), max(y, 0)
    x1, y1 = min(x + w, width), min(y + h, height)
    if x0 < x1 and y0 < y1:
        layer[y0:y1, x0:x1] = image[y0 - y : y1 - y, x0 - x : x1 - x]
    return layer


def composite(canvas: np.ndarray, layer: np.ndarray, blend_mode: str) -> np.ndarray:
    """Blend a canvas-sized layer onto the canvas. Returns a new uint8 canvas."""
    blend_fn = BLEND_MODES.get(blend_mode)
    if blend_fn is None:
        raise ValueError(f"unknown blend mode: {blend_mode}")
    out = blend_fn(canvas.astype(np.float32), layer.astype(np.float32))
    # Round, then clip and convert back to uint8
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


def draw_layer(
    canvas: np.ndarray,
    image: np.ndarray,
    offset: tuple[int, int] = (0, 0),
    blend_mode: str = "normal",
    shadow: ShadowParams | None = None,
) -> np.ndarray:
    """Draw an RGBA image onto the canvas.

    Args:
        canvas:     (H, W, 4) uint8 canvas. Not modified.
        image:      (h, w, 4) uint8 RGBA image.
        offset:     (x, y) of the image's top-left corner on the canvas.
        blend_mode: Key of BLEND_MODES.
        shadow:     When given, a drop shadow of the image's alpha is drawn
                    (source-over) underneath it in the same call.

    Returns:
        New (H, W, 4) uint8 canvas.
    """
    layer = place_layer(image, canvas.shape, offset)

    out = canvas
    if shadow is not None:
        shadow_layer = render_shadow_layer(layer[:, :, 3], shadow)
        out = composite(out, shadow_layer, "normal")

    return composite(out, layer, blend_mode)
