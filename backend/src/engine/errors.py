"""Sticker generation error kinds.

None of these are retried internally. Callers decide whether to retry with
the same or different settings.
"""


class StickerError(Exception):
    """Base class for failures that abort a single generation."""

    kind = "sticker_error"


class ImageLoadFailed(StickerError):
    """Source image could not be decoded or has an unusable shape."""

    kind = "image_load_failed"


class SurfaceUnavailable(StickerError):
    """Raster canvas could not be allocated. Not fixable by changing settings."""

    kind = "surface_unavailable"


class EncodeFailed(StickerError):
    """Final buffer could not be serialized to PNG."""

    kind = "encode_failed"


class GenerationCancelled(Exception):
    """Raised at a checkpoint when a newer request superseded this one."""
