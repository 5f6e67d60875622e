"""Sticker settings schema — immutable settings, style presets, JSON (de)serialization."""

import json
import math
import re
from dataclasses import dataclass, replace
from enum import Enum


class OutlineStyle(Enum):
    SOLID = "solid"
    WOBBLY = "wobbly"
    CHAOTIC = "chaotic"
    WAVY = "wavy"


class ShadowStyle(Enum):
    NONE = "none"
    SOFT = "soft"
    HARD = "hard"
    FLOAT = "float"


@dataclass(frozen=True)
class WaveParams:
    """One sinusoidal term: cycles per full turn and amplitude (fraction of width)."""

    freq: float
    amp: float


@dataclass(frozen=True)
class StickerSettings:
    outline_width: float = 8.0
    outline_color: tuple[int, int, int] = (255, 255, 255)
    outline_style: OutlineStyle = OutlineStyle.SOLID
    wave1: WaveParams = WaveParams(2.0, 1.2)
    wave2: WaveParams = WaveParams(3.5, 0.8)
    wave3: WaveParams = WaveParams(7.0, 0.3)
    master_amp: float = 2.0
    shadow_style: ShadowStyle = ShadowStyle.NONE

    @property
    def is_wave(self) -> bool:
        return self.outline_style != OutlineStyle.SOLID

    @property
    def waves(self) -> tuple[WaveParams, WaveParams, WaveParams]:
        return (self.wave1, self.wave2, self.wave3)


# Loaded when a wave style is selected; terms can be fine-tuned afterwards.
WAVE_PRESETS: dict[OutlineStyle, dict] = {
    OutlineStyle.WOBBLY: {
        "wave1": WaveParams(2.0, 1.2),
        "wave2": WaveParams(3.5, 0.8),
        "wave3": WaveParams(7.0, 0.3),
        "master_amp": 2.0,
    },
    OutlineStyle.CHAOTIC: {
        "wave1": WaveParams(4.0, 1.5),
        "wave2": WaveParams(9.0, 1.2),
        "wave3": WaveParams(17.0, 0.8),
        "master_amp": 3.0,
    },
    OutlineStyle.WAVY: {
        "wave1": WaveParams(1.5, 1.8),
        "wave2": WaveParams(2.5, 0.6),
        "wave3": WaveParams(5.0, 0.2),
        "master_amp": 1.5,
    },
}

DEFAULT_SETTINGS = StickerSettings()

# Wire keys accepted from the front end (camelCase, as the UI sends them).
ALLOWED_KEYS = {
    "outlineWidth",
    "outlineColor",
    "outlineStyle",
    "wave1",
    "wave2",
    "wave3",
    "masterAmp",
    "shadowStyle",
}

MAX_OUTLINE_WIDTH = 200.0
MAX_MASTER_AMP = 10.0
MAX_WAVE_AMP = 5.0

_HEX_COLOR = re.compile(r"^#([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def with_style(settings: StickerSettings, style: OutlineStyle) -> StickerSettings:
    """Select an outline style. Wave styles reset all wave terms to their preset."""
    preset = WAVE_PRESETS.get(style)
    if preset is None:
        return replace(settings, outline_style=style)
    return replace(settings, outline_style=style, **preset)


def parse_color(value: str) -> tuple[int, int, int]:
    """Parse '#rgb' or '#rrggbb' into an (r, g, b) tuple."""
    if not isinstance(value, str) or not _HEX_COLOR.match(value):
        raise ValueError(f"Invalid color: {value!r}")
    digits = value[1:]
    if len(digits) == 3:
        digits = "".join(c * 2 for c in digits)
    return (int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16))


def format_color(rgb: tuple[int, int, int]) -> str:
    return "#{:02x}{:02x}{:02x}".format(*rgb)


def _is_number(v) -> bool:
    if not isinstance(v, (int, float)) or isinstance(v, bool):
        return False
    try:
        return math.isfinite(float(v))
    except OverflowError:
        # JSON ints have no size limit
        return False


def _validate_wave(name: str, wave) -> list[str]:
    if not isinstance(wave, dict):
        return [f"'{name}' must be a dict"]
    errors = []
    freq = wave.get("freq")
    amp = wave.get("amp")
    if not _is_number(freq) or freq <= 0:
        errors.append(f"'{name}.freq' must be a positive number")
    if not _is_number(amp) or not 0 <= amp <= MAX_WAVE_AMP:
        errors.append(f"'{name}.amp' must be a number in [0, {MAX_WAVE_AMP}]")
    return errors


def validate(data: dict) -> list[str]:
    """Validate a settings dict. Returns list of error strings (empty = valid)."""
    if not isinstance(data, dict):
        return ["settings must be a dict"]

    errors = []

    unknown = set(data.keys()) - ALLOWED_KEYS
    if unknown:
        errors.append(f"Unknown settings keys: {sorted(unknown)}")

    if "outlineWidth" in data:
        w = data["outlineWidth"]
        if not _is_number(w) or not 0 <= w <= MAX_OUTLINE_WIDTH:
            errors.append(
                f"'outlineWidth' must be a number in [0, {MAX_OUTLINE_WIDTH}]"
            )

    if "outlineColor" in data:
        try:
            parse_color(data["outlineColor"])
        except ValueError as e:
            errors.append(str(e))

    if "outlineStyle" in data:
        valid = [s.value for s in OutlineStyle]
        if data["outlineStyle"] not in valid:
            errors.append(f"'outlineStyle' must be one of {valid}")

    if "shadowStyle" in data:
        valid = [s.value for s in ShadowStyle]
        if data["shadowStyle"] not in valid:
            errors.append(f"'shadowStyle' must be one of {valid}")

    if "masterAmp" in data:
        m = data["masterAmp"]
        if not _is_number(m) or not 0 <= m <= MAX_MASTER_AMP:
            errors.append(f"'masterAmp' must be a number in [0, {MAX_MASTER_AMP}]")

    for name in ("wave1", "wave2", "wave3"):
        if name in data:
            errors.extend(_validate_wave(name, data[name]))

    return errors


def from_dict(data: dict) -> StickerSettings:
    """Build settings from a wire dict. Missing keys take defaults.

    Raises:
        ValueError: If the dict fails validation.
    """
    errors = validate(data)
    if errors:
        raise ValueError(f"Invalid settings: {'; '.join(errors)}")

    d = DEFAULT_SETTINGS
    waves = {}
    for name in ("wave1", "wave2", "wave3"):
        if name in data:
            waves[name] = WaveParams(
                float(data[name]["freq"]), float(data[name]["amp"])
            )

    return replace(
        d,
        outline_width=float(data.get("outlineWidth", d.outline_width)),
        outline_color=(
            parse_color(data["outlineColor"])
            if "outlineColor" in data
            else d.outline_color
        ),
        outline_style=OutlineStyle(data.get("outlineStyle", d.outline_style.value)),
        master_amp=float(data.get("masterAmp", d.master_amp)),
        shadow_style=ShadowStyle(data.get("shadowStyle", d.shadow_style.value)),
        **waves,
    )


def to_dict(settings: StickerSettings) -> dict:
    """Serialize settings to the wire dict."""
    return {
        "outlineWidth": settings.outline_width,
        "outlineColor": format_color(settings.outline_color),
        "outlineStyle": settings.outline_style.value,
        "wave1": {"freq": settings.wave1.freq, "amp": settings.wave1.amp},
        "wave2": {"freq": settings.wave2.freq, "amp": settings.wave2.amp},
        "wave3": {"freq": settings.wave3.freq, "amp": settings.wave3.amp},
        "masterAmp": settings.master_amp,
        "shadowStyle": settings.shadow_style.value,
    }


def serialize(settings: StickerSettings) -> str:
    """Serialize settings to JSON string."""
    return json.dumps(to_dict(settings), indent=2)


def deserialize(data: str) -> StickerSettings:
    """Deserialize JSON string to settings. Raises ValueError on invalid JSON or schema."""
    try:
        raw = json.loads(data)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e
    return from_dict(raw)
