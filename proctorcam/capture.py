import threading
import time

import cv2
import numpy as np

from .errors import DeviceAccessError
from .eventlog import log_event
from .frames import CapturedFrame

MAX_READ_FAILURES = 10


class CameraSource:
    """Local webcam with a reader thread that keeps only the latest frame."""

    def __init__(self, src=0, width=640, height=480, buffer_size=2):
        self.src = src
        self.width = width
        self.height = height
        self.buffer_size = buffer_size
        self.cap = None
        self.lock = threading.Lock()
        self.latest = None
        self.failures = 0
        self.stopped = True
        self.thread = None

    def open(self):
        cap = cv2.VideoCapture(self.src)
        if not cap.isOpened():
            cap.release()
            raise DeviceAccessError(f"Could not open webcam source: {self.src}")
        cap.set(cv2.CAP_PROP_BUFFERSIZE, self.buffer_size)
        if self.width and self.height:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap = cap
        self.latest = None
        self.failures = 0
        self.stopped = False
        self.thread = threading.Thread(target=self._reader, daemon=True)
        self.thread.start()
        log_event("DEVICE", f"camera {self.src} opened")
        return self

    def _reader(self):
        while not self.stopped:
            ok, frame = self.cap.read()
            if not ok:
                self.failures += 1
                if self.failures == MAX_READ_FAILURES:
                    log_event("DEVICE", f"camera {self.src} stopped delivering frames")
                time.sleep(0.5)
                continue
            self.failures = 0
            with self.lock:
                self.latest = frame

    def read(self):
        with self.lock:
            return None if self.latest is None else self.latest.copy()

    def is_live(self):
        return (not self.stopped and self.cap is not None and self.cap.isOpened()
                and self.failures < MAX_READ_FAILURES)

    def release(self):
        self.stopped = True
        if self.thread is not None:
            self.thread.join(timeout=1.0)
            self.thread = None
        if self.cap is not None:
            self.cap.release()
            self.cap = None
        with self.lock:
            self.latest = None
        log_event("DEVICE", f"camera {self.src} released")


def encode_jpeg(frame, quality=0.85, size=None):
    """JPEG-encode a BGR frame, resizing to ``size`` (w, h) first when given."""
    if frame is None or frame.size == 0:
        return None
    if frame.dtype != np.uint8:
        frame = np.clip(frame, 0, 255).astype(np.uint8)
    if size:
        h, w = frame.shape[:2]
        if (w, h) != tuple(size):
            frame = cv2.resize(frame, tuple(size), interpolation=cv2.INTER_LINEAR)
    ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(round(quality * 100))])
    if not ok:
        return None
    return buf.tobytes()


class QuestionRef:
    """Question id shared between the exam flow and the capture ticks."""

    def __init__(self, question_id=None):
        self._value = question_id

    def get(self):
        return self._value

    def set(self, question_id):
        previous = self._value
        self._value = question_id
        return previous


class FrameCaptureEngine:
    def __init__(self, queue, scheduler, question_ref, interval_ms=1000, quality=0.85,
                 size=(640, 480), on_frame=None, debug=False):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        self.queue = queue
        self.scheduler = scheduler
        self.question_ref = question_ref
        self.interval_ms = interval_ms
        self.quality = quality
        self.size = size
        self.on_frame = on_frame
        self.debug = debug
        self.source = None
        self._task = None
        self._generation = 0
        self._lock = threading.RLock()

    @property
    def is_running(self):
        return self._task is not None

    def attach(self, source):
        self.source = source

    def start(self):
        with self._lock:
            if self._task is not None:
                return False
            self._generation += 1
            generation = self._generation
            self._task = self.scheduler.call_every(self.interval_ms, lambda: self._tick(generation))
            return True

    def stop(self):
        """Cancel the timer. Once this returns no tick of the old timer enqueues."""
        with self._lock:
            task, self._task = self._task, None
            if task is None:
                return False
            task.cancel()
            return True

    def _tick(self, generation):
        with self._lock:
            # stale ticks from a timer that was stopped (or replaced) are ignored
            if self._task is None or generation != self._generation:
                return
            self.capture_once()

    def capture_once(self):
        """Grab, encode and enqueue a single frame. Failures are logged, never raised."""
        source = self.source
        if source is None:
            return None
        try:
            image = source.read()
            if image is None:
                return None
            captured_at = self.scheduler.now_ms()
            question_id = self.question_ref.get()
            data = encode_jpeg(image, self.quality, self.size)
            if data is None:
                return None
            frame = CapturedFrame(data, captured_at, question_id)
            evicted = self.queue.enqueue(frame)
            if self.debug:
                log_event("CAPTURE", f"question {question_id} {round(len(data) / 1024)} KB, "
                                     f"queued={len(self.queue)} evicted={len(evicted)}")
            if self.on_frame is not None:
                self.on_frame(frame)
            return frame
        except Exception as e:
            log_event("CAPTURE_ERROR", str(e))
            return None
