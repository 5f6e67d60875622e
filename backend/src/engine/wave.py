"""Wave field — angle-dependent radial perturbation for wave outline styles."""

import math

import numpy as np

from settings.schema import StickerSettings

# Phase on the third term so the three terms never all align at angle 0.
THIRD_TERM_PHASE = 1.5


def wobble(angle: float, settings: StickerSettings) -> float:
    """Signed radial perturbation at `angle` (radians). Pure."""
    w1, w2, w3 = settings.waves
    return (
        math.sin(angle * w1.freq) * w1.amp
        + math.cos(angle * w2.freq) * w2.amp
        + math.sin(angle * w3.freq + THIRD_TERM_PHASE) * w3.amp
    ) * settings.master_amp


def wobble_array(angles: np.ndarray, settings: StickerSettings) -> np.ndarray:
    """Vectorized wobble over an array of angles (float64)."""
    w1, w2, w3 = settings.waves
    angles = np.asarray(angles, dtype=np.float64)
    return (
        np.sin(angles * w1.freq) * w1.amp
        + np.cos(angles * w2.freq) * w2.amp
        + np.sin(angles * w3.freq + THIRD_TERM_PHASE) * w3.amp
    ) * settings.master_amp


def max_wobble(settings: StickerSettings) -> float:
    """Upper bound of |wobble| over all angles."""
    return settings.master_amp * sum(w.amp for w in settings.waves)
