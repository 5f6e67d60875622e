"""Drop shadow presets and shadow layer rendering."""

from dataclasses import dataclass

import numpy as np
from scipy.ndimage import gaussian_filter

from settings.schema import ShadowStyle


@dataclass(frozen=True)
class ShadowParams:
    blur: float
    offset_x: int
    offset_y: int
    color: tuple[int, int, int, float]  # r, g, b, alpha 0-1


SHADOW_PRESETS: dict[ShadowStyle, ShadowParams] = {
    ShadowStyle.SOFT: ShadowParams(blur=16, offset_x=0, offset_y=4, color=(0, 0, 0, 0.20)),
    ShadowStyle.HARD: ShadowParams(blur=2, offset_x=3, offset_y=5, color=(0, 0, 0, 0.35)),
    ShadowStyle.FLOAT: ShadowParams(blur=28, offset_x=0, offset_y=12, color=(0, 0, 0, 0.18)),
}


def shadow_for(style: ShadowStyle) -> ShadowParams | None:
    """Fixed shadow parameters for a style. None means no shadow layer."""
    return SHADOW_PRESETS.get(style)


def _shift(alpha: np.ndarray, dx: int, dy: int) -> np.ndarray:
    """Translate a 2-D array by (dx, dy), filling with zeros."""
    h, w = alpha.shape
    out = np.zeros_like(alpha)
    if abs(dx) >= w or abs(dy) >= h:
        return out
    src = alpha[max(-dy, 0) : h - max(dy, 0), max(-dx, 0) : w - max(dx, 0)]
    out[max(dy, 0) : h - max(-dy, 0), max(dx, 0) : w - max(-dx, 0)] = src
    return out


def render_shadow_layer(alpha: np.ndarray, shadow: ShadowParams) -> np.ndarray:
    """Build a canvas-sized RGBA shadow layer from a layer's alpha coverage.

    Blur follows the canvas shadowBlur convention: sigma = blur / 2.
    """
    coverage = _shift(alpha, shadow.offset_x, shadow.offset_y).astype(np.float32)
    if shadow.blur > 0:
        coverage = gaussian_filter(coverage, sigma=shadow.blur / 2.0, mode="constant")

    r, g, b, a = shadow.color
    layer = np.zeros(alpha.shape + (4,), dtype=np.uint8)
    layer[:, :, 0] = r
    layer[:, :, 1] = g
    layer[:, :, 2] = b
    layer[:, :, 3] = np.clip(np.rint(coverage * a), 0, 255).astype(np.uint8)
    return layer
