import threading
from collections import namedtuple

class CapturedFrame(namedtuple("CapturedFrame", ["data", "captured_at_ms", "question_id"])):
    """One JPEG-encoded frame tagged with the question shown when it was taken."""
    __slots__ = ()
    content_type = "image/jpeg"


def frame_filename(frame):
    return f"image-{frame.captured_at_ms}.jpg"


class CaptureQueue:
    """Bounded FIFO buffer of captured frames.

    Insertion order is capture order. Once the capacity is exceeded the
    oldest frames are evicted. The capture thread enqueues while upload
    threads drain, so both go through the same lock.
    """

    def __init__(self, capacity):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = capacity
        self._frames = []
        self._lock = threading.Lock()

    def enqueue(self, frame):
        with self._lock:
            self._frames.append(frame)
            overflow = len(self._frames) - self.capacity
            if overflow <= 0:
                return []
            evicted = self._frames[:overflow]
            del self._frames[:overflow]
            return evicted

    def drain(self, predicate=None):
        with self._lock:
            if predicate is None:
                drained, self._frames = self._frames, []
                return drained
            drained = []
            kept = []
            for frame in self._frames:
                (drained if predicate(frame) else kept).append(frame)
            self._frames = kept
            return drained

    def drain_question(self, question_id):
        return self.drain(lambda f: f.question_id == question_id)

    def snapshot(self):
        with self._lock:
            return list(self._frames)

    def clear(self):
        with self._lock:
            self._frames = []

    def __len__(self):
        with self._lock:
            return len(self._frames)
