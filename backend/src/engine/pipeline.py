"""Sticker pipeline — plan, dilate, fill, composite, encode.

Stages run sequentially and each owns the buffers it allocates. Callers can
pass `is_current`, a zero-arg callable checked at three checkpoints (start,
after dilation, before encode); when it returns False the generation stops
with GenerationCancelled.

Includes rolling per-stage timing stats and conditional breadcrumbs.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable

import numpy as np
import sentry_sdk

from engine.canvas import plan_canvas
from engine.codec import as_rgba, encode_png
from engine.compositor import draw_layer, new_canvas
from engine.dilation import dilate_silhouette, max_stamp_radius, ring_count
from engine.errors import GenerationCancelled, SurfaceUnavailable
from engine.fill import fill_silhouette
from engine.shadow import shadow_for
from settings.schema import StickerSettings

logger = logging.getLogger(__name__)

# Per-stage timing threshold (milliseconds)
STAGE_WARN_MS = 250

# Thread-safe timing stats (several generations may overlap)
_timing_lock = threading.Lock()
_stage_timing: dict[str, deque] = defaultdict(lambda: deque(maxlen=100))


def record_timing(stage: str, elapsed_ms: float):
    """Record a timing sample for a stage."""
    with _timing_lock:
        _stage_timing[stage].append(elapsed_ms)
    if elapsed_ms > STAGE_WARN_MS:
        logger.warning(
            "Stage %s took %.0fms (>%dms warn threshold)",
            stage,
            elapsed_ms,
            STAGE_WARN_MS,
        )


def get_stage_stats() -> dict[str, dict]:
    """Return p50/p95/max per stage."""
    result = {}
    with _timing_lock:
        items = [(stage, sorted(samples)) for stage, samples in _stage_timing.items()]
    for stage, s in items:
        result[stage] = {
            "p50": s[len(s) // 2] if s else 0,
            "p95": s[int(len(s) * 0.95)] if len(s) >= 20 else None,
            "max": max(s) if s else 0,
            "samples": len(s),
        }
    return result


def flush_timing():
    """Clear all timing stats."""
    with _timing_lock:
        _stage_timing.clear()


def _checkpoint(is_current: Callable[[], bool] | None, where: str):
    if is_current is not None and not is_current():
        logger.debug("Generation superseded at %s", where)
        raise GenerationCancelled(where)


class _Stage:
    """Times a stage and leaves a breadcrumb for it."""

    def __init__(self, name: str):
        self.name = name
        self.t0 = 0.0

    def __enter__(self):
        sentry_sdk.add_breadcrumb(category="sticker", message=self.name, level="debug")
        self.t0 = time.monotonic()
        return self

    def __exit__(self, exc_type, exc, tb):
        record_timing(self.name, (time.monotonic() - self.t0) * 1000)
        return False


def render_sticker(
    cutout: np.ndarray,
    settings: StickerSettings,
    is_current: Callable[[], bool] | None = None,
) -> np.ndarray:
    """Render the sticker raster.

    Args:
        cutout:     Foreground cutout, (h, w, 4) or (h, w, 3) uint8.
        settings:   Immutable sticker settings.
        is_current: Optional supersede check, see module docstring.

    Returns:
        (H, W, 4) uint8 RGBA sticker, sized by plan_canvas().

    Raises:
        ImageLoadFailed:     Cutout has an unusable shape or dtype.
        SurfaceUnavailable:  Canvas could not be allocated.
        GenerationCancelled: is_current() returned False at a checkpoint.
    """
    _checkpoint(is_current, "start")

    source = as_rgba(cutout)
    src_h, src_w = source.shape[:2]
    plan = plan_canvas(src_w, src_h, settings)
    canvas = new_canvas(plan.width, plan.height)
    origin = (plan.origin_x, plan.origin_y)

    logger.debug(
        "Sticker %dx%d -> canvas %dx%d (pad %.2f, reach %.2f, %d rings)",
        src_w,
        src_h,
        plan.width,
        plan.height,
        plan.pad,
        max_stamp_radius(settings),
        ring_count(settings),
    )

    if settings.outline_width > 0:
        with _Stage("dilate"):
            try:
                mask = dilate_silhouette(source[:, :, 3], plan, settings)
            except MemoryError as e:
                raise SurfaceUnavailable("Could not allocate outline mask") from e

        _checkpoint(is_current, "dilate")

        with _Stage("fill"):
            outline = fill_silhouette(mask, settings.outline_color)
        del mask

        with _Stage("composite_outline"):
            canvas = draw_layer(canvas, outline, (0, 0), "normal")
        del outline
    else:
        _checkpoint(is_current, "dilate")

    with _Stage("composite_source"):
        canvas = draw_layer(
            canvas, source, origin, "normal", shadow_for(settings.shadow_style)
        )

    return canvas


def generate_sticker(
    cutout: np.ndarray,
    settings: StickerSettings,
    is_current: Callable[[], bool] | None = None,
) -> bytes:
    """Render and PNG-encode a sticker. Same inputs give byte-identical output.

    Raises:
        EncodeFailed: PNG serialization failed (plus render_sticker's errors).
    """
    frame = render_sticker(cutout, settings, is_current)
    _checkpoint(is_current, "encode")
    with _Stage("encode"):
        return encode_png(frame)
