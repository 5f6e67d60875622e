"""Canvas sizing — output buffer dimensions from source size and outline geometry.

Pad values are usually fractional (wave styles scale the width by the wave
amplitudes). Dimensions round UP: `ceil(src + 2 * pad + shadow_pad)`, so the
stamped mask edge is never clipped.
"""

import math
from dataclasses import dataclass

from engine.wave import max_wobble
from settings.schema import ShadowStyle, StickerSettings

# Guards the stamped edge against rounding; also the floor when width is 0.
EDGE_GUARD = 4.0

# Largest shadow blur radius (28) plus its offset.
SHADOW_PAD = 30


@dataclass(frozen=True)
class CanvasPlan:
    width: int
    height: int
    origin_x: int
    origin_y: int
    pad: float
    shadow_pad: int


def wobble_extra(settings: StickerSettings) -> float:
    if not settings.is_wave:
        return 0.0
    return settings.outline_width * max_wobble(settings)


def outline_pad(settings: StickerSettings) -> float:
    return max(settings.outline_width + wobble_extra(settings) + EDGE_GUARD, EDGE_GUARD)


def shadow_pad(settings: StickerSettings) -> int:
    return 0 if settings.shadow_style == ShadowStyle.NONE else SHADOW_PAD


def plan_canvas(src_width: int, src_height: int, settings: StickerSettings) -> CanvasPlan:
    """Compute the canvas for one generation. The source is centered."""
    pad = outline_pad(settings)
    spad = shadow_pad(settings)
    width = math.ceil(src_width + 2 * pad + spad)
    height = math.ceil(src_height + 2 * pad + spad)
    return CanvasPlan(
        width=width,
        height=height,
        origin_x=(width - src_width) // 2,
        origin_y=(height - src_height) // 2,
        pad=pad,
        shadow_pad=spad,
    )
