"""Background removal — rembg adapter, progress channel, background job.

The model behind rembg is a black box here: any image in, an equal-size
RGBA cutout out. RemovalManager runs it off the command thread so progress
can be polled while the model works.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import numpy as np
import sentry_sdk
from PIL import Image

from engine.codec import as_rgba
from engine.errors import ImageLoadFailed, StickerError

logger = logging.getLogger(__name__)

ProgressFn = Callable[[int], None]


class ProgressChannel:
    """Fan-out of percentage updates (0-100) that never go backwards."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: list[ProgressFn] = []
        self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def subscribe(self, fn: ProgressFn) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        with self._lock:
            self._subscribers.append(fn)

        def unsubscribe():
            with self._lock:
                if fn in self._subscribers:
                    self._subscribers.remove(fn)

        return unsubscribe

    def publish(self, pct: float):
        """Clamp to 0-100, drop regressions, notify subscribers."""
        value = int(round(max(0.0, min(100.0, float(pct)))))
        with self._lock:
            if value < self._value:
                return
            self._value = value
            subscribers = list(self._subscribers)
        for fn in subscribers:
            fn(value)


def _rembg_remove(img: Image.Image) -> Image.Image:
    """Run rembg on a PIL image. Imported lazily: model load is slow."""
    from rembg import remove

    return remove(img)


def remove_background(
    image: np.ndarray, progress: ProgressChannel | None = None
) -> np.ndarray:
    """Isolate the foreground of `image`.

    Args:
        image:    (H, W, 3|4) uint8 photo.
        progress: Optional channel; receives 0 at start and 100 when done.

    Returns:
        (H, W, 4) uint8 cutout, same size as the input.

    Raises:
        ImageLoadFailed: Input unusable or the remover returned a bad raster.
    """
    source = as_rgba(image)
    if progress is not None:
        progress.publish(0)

    img = Image.fromarray(source).convert("RGBA")
    result = _rembg_remove(img)
    if progress is not None:
        progress.publish(90)

    cutout = np.array(result.convert("RGBA"))
    if cutout.shape[:2] != source.shape[:2]:
        raise ImageLoadFailed(
            f"Cutout size {cutout.shape[1]}x{cutout.shape[0]} does not match "
            f"source {source.shape[1]}x{source.shape[0]}"
        )

    if progress is not None:
        progress.publish(100)
    logger.info("Background removed: %dx%d", source.shape[1], source.shape[0])
    return cutout


class RemovalStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class RemovalJob:
    """Tracks state of one background removal."""

    status: RemovalStatus = RemovalStatus.IDLE
    width: int = 0
    height: int = 0
    error: str | None = None
    error_kind: str | None = None
    progress: ProgressChannel = field(default_factory=ProgressChannel)
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _cancel_event: threading.Event = field(default_factory=threading.Event)
    _thread: threading.Thread | None = field(default=None, repr=False)

    def cancel(self):
        self._cancel_event.set()


class RemovalManager:
    """Runs background removal on a worker thread. One live job at a time.

    Starting a new job cancels the previous one. rembg itself cannot be
    interrupted, so a cancelled job runs to the end and its cutout is dropped.
    """

    def __init__(self):
        self._job: RemovalJob | None = None
        self._threads: list[threading.Thread] = []

    @property
    def job(self) -> RemovalJob | None:
        return self._job

    @property
    def progress(self) -> int:
        """Percent done of the current job, 0 when none has run."""
        job = self._job
        return job.progress.value if job is not None else 0

    def start(
        self, image: np.ndarray, on_done: Callable[[np.ndarray], None]
    ) -> RemovalJob:
        """Start removing the background of `image`. Returns the job.

        `on_done(cutout)` runs on the worker thread, only for a job that was
        not cancelled.
        """
        self.cancel()
        job = RemovalJob()
        thread = threading.Thread(
            target=self._run_removal, args=(job, image, on_done), daemon=True
        )
        job._thread = thread
        job.status = RemovalStatus.RUNNING
        self._job = job
        self._threads = [t for t in self._threads if t.is_alive()]
        self._threads.append(thread)
        thread.start()
        return job

    def _run_removal(
        self,
        job: RemovalJob,
        image: np.ndarray,
        on_done: Callable[[np.ndarray], None],
    ):
        try:
            cutout = remove_background(image, job.progress)
            with job._lock:
                if job._cancel_event.is_set():
                    job.status = RemovalStatus.CANCELLED
                    logger.debug("Dropped cutout of cancelled removal")
                    return
                on_done(cutout)
                job.width = cutout.shape[1]
                job.height = cutout.shape[0]
                job.status = RemovalStatus.COMPLETE
        except StickerError as e:
            logger.warning("Background removal failed (%s)", e.kind)
            self._fail(job, str(e), e.kind)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Background removal failed")
            self._fail(
                job, f"Background removal failed: {type(e).__name__}", "internal"
            )

    def _fail(self, job: RemovalJob, message: str, kind: str):
        with job._lock:
            if job._cancel_event.is_set():
                return
            job.status = RemovalStatus.ERROR
            job.error = message
            job.error_kind = kind

    def get_status(self) -> dict:
        """Return serializable status dict."""
        job = self._job
        if job is None:
            return {
                "status": RemovalStatus.IDLE.value,
                "progress": 0,
                "width": 0,
                "height": 0,
                "error": None,
                "error_kind": None,
            }
        with job._lock:
            return {
                "status": job.status.value,
                "progress": job.progress.value,
                "width": job.width,
                "height": job.height,
                "error": job.error,
                "error_kind": job.error_kind,
            }

    def cancel(self) -> bool:
        """Cancel the running job. Returns True if one was cancelled."""
        job = self._job
        if job is None:
            return False
        with job._lock:
            if job.status == RemovalStatus.RUNNING:
                job.cancel()
                job.status = RemovalStatus.CANCELLED
                return True
        return False

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """Block until no worker is running. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        for thread in list(self._threads):
            thread.join(max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                return False
        return True

    def close(self):
        self.cancel()
