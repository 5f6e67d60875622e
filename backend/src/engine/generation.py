"""Generation manager — debounced background sticker rendering with supersede.

Every submit() gets the next sequence number. The latest sequence number is
the only one allowed to commit; older requests are cancelled before they
start (debounce timer cancelled) or, if already running, stop at the next
checkpoint or have their result released on completion.

At most one StickerOutput is live. Committing a new one releases the old.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import sentry_sdk

from engine.codec import as_rgba
from engine.errors import GenerationCancelled, StickerError
from engine.pipeline import generate_sticker
from settings.schema import StickerSettings

logger = logging.getLogger(__name__)

# Settings edits inside this window collapse into one generation
DEBOUNCE_S = 0.1


class GenerationStatus(Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class StickerOutput:
    """A generated PNG. `data` is emptied once the output is released."""

    seq: int
    data: bytes
    width: int
    height: int
    released: bool = False

    def release(self):
        self.data = b""
        self.released = True


@dataclass
class GenerationRequest:
    seq: int
    settings: StickerSettings
    cutout: np.ndarray = field(repr=False)


class GenerationManager:
    """Owns the session cutout, the pending request, and the live output."""

    def __init__(self, debounce_s: float = DEBOUNCE_S):
        self.debounce_s = debounce_s
        self._lock = threading.Lock()
        self._seq = 0
        self._cutout: np.ndarray | None = None
        self._timer: threading.Timer | None = None
        self._threads: list[threading.Thread] = []
        self._live: StickerOutput | None = None
        self._status = GenerationStatus.IDLE
        self._error: str | None = None
        self._error_kind: str | None = None
        self._discarded = 0

    # --- session source ---

    def load_cutout(self, cutout: np.ndarray) -> tuple[int, int]:
        """Set the session cutout. Supersedes all work and releases the live output.

        Returns:
            (width, height) of the cutout.

        Raises:
            ImageLoadFailed: Unusable raster.
        """
        image = as_rgba(cutout)
        with self._lock:
            self._seq += 1
            self._cancel_timer_locked()
            self._release_live_locked()
            self._cutout = image
            self._status = GenerationStatus.IDLE
            self._error = None
            self._error_kind = None
        return image.shape[1], image.shape[0]

    @property
    def has_cutout(self) -> bool:
        with self._lock:
            return self._cutout is not None

    def reset(self):
        """Drop the cutout and live output (session reset)."""
        with self._lock:
            self._seq += 1
            self._cancel_timer_locked()
            self._release_live_locked()
            self._cutout = None
            self._status = GenerationStatus.IDLE
            self._error = None
            self._error_kind = None

    # --- requests ---

    def submit(self, settings: StickerSettings) -> int:
        """Schedule a generation for `settings` after the debounce window.

        Returns:
            The request's sequence number.

        Raises:
            RuntimeError: If no cutout is loaded.
        """
        with self._lock:
            if self._cutout is None:
                raise RuntimeError("No cutout loaded")
            self._seq += 1
            request = GenerationRequest(self._seq, settings, self._cutout)
            self._cancel_timer_locked()
            timer = threading.Timer(self.debounce_s, self._start, args=(request,))
            timer.daemon = True
            self._timer = timer
            self._status = GenerationStatus.PENDING
            timer.start()
        return request.seq

    def is_current(self, seq: int) -> bool:
        with self._lock:
            return seq == self._seq

    def _start(self, request: GenerationRequest):
        with self._lock:
            if request.seq != self._seq:
                return
            self._timer = None
            thread = threading.Thread(target=self._run, args=(request,), daemon=True)
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
            self._status = GenerationStatus.RUNNING
            thread.start()

    def _run(self, request: GenerationRequest):
        try:
            data = generate_sticker(
                request.cutout,
                request.settings,
                is_current=lambda: self.is_current(request.seq),
            )
        except GenerationCancelled:
            with self._lock:
                self._discarded += 1
            return
        except StickerError as e:
            logger.error("Generation %d failed: %s", request.seq, e.kind)
            self._fail(request.seq, e.kind, str(e))
            return
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Generation %d failed", request.seq)
            self._fail(
                request.seq, "internal", f"Generation failed: {type(e).__name__}"
            )
            return

        self._commit(request, data)

    def _commit(self, request: GenerationRequest, data: bytes):
        # Size comes from the PNG IHDR chunk, no decode needed
        output = StickerOutput(
            seq=request.seq,
            data=data,
            width=int.from_bytes(data[16:20], "big"),
            height=int.from_bytes(data[20:24], "big"),
        )
        with self._lock:
            if request.seq != self._seq:
                # Superseded while encoding — never goes live
                output.release()
                self._discarded += 1
                logger.debug("Discarded stale generation %d", request.seq)
                return
            self._release_live_locked()
            self._live = output
            self._status = GenerationStatus.COMPLETE
            self._error = None
            self._error_kind = None
        logger.info(
            "Generation %d complete: %dx%d, %d bytes",
            request.seq,
            output.width,
            output.height,
            len(data),
        )

    def _fail(self, seq: int, kind: str, message: str):
        with self._lock:
            if seq != self._seq:
                return
            self._status = GenerationStatus.ERROR
            self._error = message
            self._error_kind = kind

    def _cancel_timer_locked(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _release_live_locked(self):
        if self._live is not None:
            self._live.release()
            self._live = None

    # --- results ---

    @property
    def live(self) -> StickerOutput | None:
        with self._lock:
            return self._live

    def snapshot(self) -> tuple[int, int, int, bytes] | None:
        """Live output as (seq, width, height, data), or None.

        Read in one locked step: a commit on the worker thread releases the
        previous output, so reading `live` and then `live.data` can see b"".
        """
        with self._lock:
            live = self._live
            if live is None or live.released:
                return None
            return live.seq, live.width, live.height, live.data

    @property
    def discarded(self) -> int:
        """Count of superseded generations whose work was thrown away."""
        with self._lock:
            return self._discarded

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """Block until no request is pending or running. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                timer = self._timer
                busy = [t for t in self._threads if t.is_alive()]
            if timer is None and not busy:
                return True
            if busy:
                busy[0].join(0.01)
            else:
                time.sleep(0.01)
        return False

    def get_status(self) -> dict:
        """Return serializable status dict."""
        with self._lock:
            live = self._live
            return {
                "status": self._status.value,
                "seq": self._seq,
                "live_seq": live.seq if live is not None else None,
                "width": live.width if live is not None else 0,
                "height": live.height if live is not None else 0,
                "bytes": len(live.data) if live is not None else 0,
                "discarded": self._discarded,
                "error": self._error,
                "error_kind": self._error_kind,
            }

    def close(self):
        """Cancel pending work and release the live output."""
        self.reset()
