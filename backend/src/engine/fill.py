"""Outline color fill — recolor the dilated mask, keeping its alpha shape."""

import numpy as np

from engine.compositor import composite


def fill_silhouette(mask: np.ndarray, color: tuple[int, int, int]) -> np.ndarray:
    """Alpha-masked flat fill.

    Draws a solid `color` layer with source-in over the mask, so covered
    pixels become (r, g, b, mask) and everything else stays (0, 0, 0, 0).

    Args:
        mask:  (H, W) uint8 coverage from dilate_silhouette().
        color: (r, g, b) outline color.

    Returns:
        (H, W, 4) uint8 RGBA outline layer.
    """
    base = np.zeros(mask.shape + (4,), dtype=np.uint8)
    base[:, :, 3] = mask

    solid = np.empty_like(base)
    solid[:, :, :3] = color
    solid[:, :, 3] = 255

    return composite(base, solid, "source-in")
