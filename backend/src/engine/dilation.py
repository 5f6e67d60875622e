"""Silhouette dilation — enlarged alpha mask built by stamping translated copies.

Each stamp is the source alpha shifted by a polar offset; stamps are combined
with np.maximum so coverage only ever grows. Solid outlines use a constant
radius per ring, wave outlines scale each ring radius by the wave field,
tapering the perturbation toward the core.

Offsets round to whole pixels and duplicates are stamped once. The max-union
is order independent, so deduplication changes cost, not output.
"""

import numpy as np

from engine.canvas import CanvasPlan
from engine.wave import wobble_array
from settings.schema import StickerSettings

# 5 degree steps
ANGLE_STEPS = 72

# Radius never drops below this fraction of the ring, so a large negative
# wobble can't fold a stamp back through the origin.
RADIUS_FLOOR = 0.05

RING_STEP = 2


def sample_angles(steps: int = ANGLE_STEPS) -> np.ndarray:
    return 2.0 * np.pi * np.arange(steps, dtype=np.float64) / steps


def ring_radius(angle, ring: float, scale: float, settings: StickerSettings):
    """Wave-style radius at `angle` for a ring of base radius `ring`.

    `scale` is ring / outline_width. Accepts a scalar or an array of angles.
    """
    factor = np.maximum(RADIUS_FLOOR, 1.0 + wobble_array(angle, settings) * scale)
    radius = ring * factor
    if np.ndim(radius) == 0:
        return float(radius)
    return radius


def solid_rings(width: float) -> list[float]:
    """Outer ring first, then width-1, width-3, ... while above zero."""
    if width <= 0:
        return []
    rings = [width]
    r = width - 1
    while r > 0:
        rings.append(r)
        r -= RING_STEP
    return rings


def wave_rings(width: float) -> list[float]:
    """Base radii for wave styles: width, width-2, ... while above zero."""
    rings = []
    r = width
    while r > 0:
        rings.append(r)
        r -= RING_STEP
    return rings


def _round_half_away(values: np.ndarray) -> np.ndarray:
    return (np.sign(values) * np.floor(np.abs(values) + 0.5)).astype(np.int64)


def _offsets_for(radii: np.ndarray, angles: np.ndarray) -> list[tuple[int, int]]:
    dx = _round_half_away(np.cos(angles) * radii)
    dy = _round_half_away(np.sin(angles) * radii)
    return list(zip(dx.tolist(), dy.tolist()))


def stamp_offsets(settings: StickerSettings, steps: int = ANGLE_STEPS) -> list[tuple[int, int]]:
    """Ordered, de-duplicated (dx, dy) stamp offsets for the outline."""
    width = settings.outline_width
    if width <= 0:
        return []

    angles = sample_angles(steps)
    offsets: list[tuple[int, int]] = []

    if not settings.is_wave:
        for r in solid_rings(width):
            offsets.extend(_offsets_for(np.full(steps, r), angles))
    else:
        # Outer boundary at full wobble first
        offsets.extend(_offsets_for(ring_radius(angles, width, 1.0, settings), angles))
        for ring in wave_rings(width):
            scale = ring / width
            offsets.extend(
                _offsets_for(ring_radius(angles, ring, scale, settings), angles)
            )

    return list(dict.fromkeys(offsets))


def _stamp_max(dst: np.ndarray, src: np.ndarray, x: int, y: int):
    """dst = max(dst, src placed at (x, y)), clipped to dst bounds."""
    h, w = src.shape
    dh, dw = dst.shape
    x0, y0 = max(x, 0), max(y, 0)
    x1, y1 = min(x + w, dw), min(y + h, dh)
    if x0 >= x1 or y0 >= y1:
        return
    region = dst[y0:y1, x0:x1]
    np.maximum(region, src[y0 - y : y1 - y, x0 - x : x1 - x], out=region)


def dilate_silhouette(
    alpha: np.ndarray, plan: CanvasPlan, settings: StickerSettings
) -> np.ndarray:
    """Build the dilated outline mask on the plan's canvas.

    Args:
        alpha: Source alpha channel (h, w) uint8.
        plan: Canvas plan from plan_canvas().
        settings: Sticker settings (width, style, wave terms).

    Returns:
        (plan.height, plan.width) uint8 mask. All zero when width is 0.
    """
    mask = np.zeros((plan.height, plan.width), dtype=np.uint8)
    for dx, dy in stamp_offsets(settings):
        _stamp_max(mask, alpha, plan.origin_x + dx, plan.origin_y + dy)
    return mask


def max_stamp_radius(settings: StickerSettings) -> float:
    """Largest radius any stamp can reach (for bounds checks)."""
    if settings.outline_width <= 0:
        return 0.0
    if not settings.is_wave:
        return settings.outline_width
    angles = sample_angles()
    return float(np.max(ring_radius(angles, settings.outline_width, 1.0, settings)))


def ring_count(settings: StickerSettings) -> int:
    width = settings.outline_width
    if width <= 0:
        return 0
    if not settings.is_wave:
        return len(solid_rings(width))
    return 1 + len(wave_rings(width))

