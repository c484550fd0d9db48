import threading

from .capture import FrameCaptureEngine, QuestionRef
from .config import CaptureConfig
from .dispatcher import ALL, UploadDispatcher
from .errors import DeviceAccessError
from .eventlog import log_event
from .frames import CaptureQueue
from .scheduler import ThreadScheduler

IDLE = "idle"
CAPTURING = "capturing"
UPLOADING = "uploading"
ERROR = "error"

STATUSES = (IDLE, CAPTURING, UPLOADING, ERROR)


class CaptureSession:
    """State of one monitored exam attempt, shown by the exam flow's status indicator."""

    def __init__(self, user_id, exam_id, session_id, question_id=None):
        self.user_id = user_id
        self.exam_id = exam_id
        self.session_id = session_id
        self.question = QuestionRef(question_id)
        self.status = IDLE
        self.is_capturing = False
        self.error = None
        self.device_error = False
        self.last_capture_ms = None
        self.queue = None
        self._uploading = False
        self._lock = threading.Lock()

    @property
    def frames_queued(self):
        return len(self.queue) if self.queue is not None else 0

    @property
    def current_question_id(self):
        return self.question.get()

    def identity(self):
        return {"userId": self.user_id, "examId": self.exam_id, "sessionId": self.session_id}

    def _set_status(self, status):
        if status != self.status:
            log_event("STATUS", f"session {self.session_id}: {self.status} -> {status}")
            self.status = status

    def _settle(self):
        # a device failure is only left through clear_error or reset
        if self.device_error:
            return
        if self._uploading:
            self._set_status(UPLOADING)
        elif self.is_capturing:
            self._set_status(CAPTURING)
        else:
            self._set_status(IDLE)

    def set_capturing(self, capturing):
        with self._lock:
            self.is_capturing = capturing
            # error is left only through start/restart or teardown
            if self.status != ERROR or capturing:
                self._settle()

    def begin_upload(self):
        with self._lock:
            self._uploading = True
            self._settle()

    def finish_upload(self, ok, error=None):
        with self._lock:
            self._uploading = False
            if ok:
                self._settle()
            else:
                if not self.device_error:
                    self.error = error
                self._set_status(ERROR)

    def fail(self, error):
        with self._lock:
            self.is_capturing = False
            self.device_error = True
            self.error = error
            self._set_status(ERROR)

    def clear_error(self):
        with self._lock:
            self.error = None
            self.device_error = False
            if self.status == ERROR:
                self._settle()

    def reset(self):
        with self._lock:
            self.is_capturing = False
            self.error = None
            self.device_error = False
            self.last_capture_ms = None
            self._settle()

    def snapshot(self):
        return {
            "userId": self.user_id,
            "examId": self.exam_id,
            "sessionId": self.session_id,
            "questionId": self.current_question_id,
            "status": self.status,
            "isCapturing": self.is_capturing,
            "lastCaptureTime": self.last_capture_ms,
            "error": self.error,
            "framesQueued": self.frames_queued,
        }


class CaptureController:
    """Owns the camera, the capture timer and the upload dispatcher for one session.

    ``device_factory`` returns an opened frame source (``read``, ``is_live``,
    ``release``) or raises ``DeviceAccessError``. With ``background_uploads``
    the uploads triggered by question changes run on their own thread so the
    exam flow never waits on the network.
    """

    def __init__(self, session, device_factory, transport, capture_config=None, scheduler=None,
                 background_uploads=True):
        self.session = session
        self.device_factory = device_factory
        self.config = capture_config or CaptureConfig()
        self.scheduler = scheduler or ThreadScheduler()
        self.background_uploads = background_uploads
        self.queue = CaptureQueue(self.config.capacity)
        session.queue = self.queue
        self.engine = FrameCaptureEngine(
            self.queue, self.scheduler, session.question,
            interval_ms=self.config.interval_ms,
            quality=self.config.quality,
            size=(self.config.width, self.config.height),
            on_frame=self._on_frame,
        )
        self.dispatcher = UploadDispatcher(self.queue, transport, session)
        self.device = None
        self.visible = True

    @property
    def status(self):
        return self.session.status

    def _on_frame(self, frame):
        self.session.last_capture_ms = frame.captured_at_ms

    def _acquire_device(self):
        if self.device is not None and self.device.is_live():
            return self.device
        self._release_device()
        try:
            device = self.device_factory()
        except DeviceAccessError as e:
            log_event("DEVICE_ERROR", str(e))
            self.engine.stop()
            self.dispatcher.stop_periodic()
            self.session.fail(str(e))
            return None
        self.device = device
        self.engine.attach(device)
        return device

    def _release_device(self):
        device, self.device = self.device, None
        self.engine.attach(None)
        if device is not None:
            device.release()

    def start(self):
        """Acquire the camera and arm the capture timer. Also recovers from ``error``."""
        if self.session.is_capturing:
            return True
        if self._acquire_device() is None:
            return False
        self.session.clear_error()
        self.session.set_capturing(True)
        if self.visible:
            self.engine.start()
        if self.config.flush_interval_ms:
            self.dispatcher.start_periodic(self.scheduler, self.config.flush_interval_ms)
        log_event("CAPTURE", f"started for question {self.session.current_question_id}")
        return True

    def restart(self):
        self.stop()
        self._release_device()
        return self.start()

    def stop(self):
        """Clear the timers. An upload already in flight is left to finish."""
        was_running = self.engine.stop()
        self.dispatcher.stop_periodic()
        if self.session.is_capturing or was_running:
            log_event("CAPTURE", "stopped")
        self.session.set_capturing(False)

    def set_visible(self, visible):
        """Pause ticks while the page is hidden; the camera stays open."""
        if visible == self.visible:
            return
        self.visible = visible
        if not self.session.is_capturing:
            return
        if not visible:
            self.engine.stop()
            log_event("CAPTURE", "paused (hidden)")
            return
        if self._acquire_device() is None:
            return
        self.engine.start()
        log_event("CAPTURE", "resumed (visible)")

    def on_question_change(self, question_id):
        """Tag new frames with ``question_id`` and upload the ones from the previous question."""
        previous = self.session.question.set(question_id)
        if previous is None or previous == question_id:
            return None
        if self.background_uploads:
            return self.dispatcher.flush_async(previous)
        return self.dispatcher.flush(previous)

    def flush(self, scope=ALL):
        return self.dispatcher.flush(scope)

    def teardown(self):
        self.stop()
        self._release_device()
        self.queue.clear()
        self.session.reset()
        log_event("CAPTURE", f"session {self.session.session_id} resources released")

    def snapshot(self):
        state = self.session.snapshot()
        state["paused"] = self.session.is_capturing and not self.engine.is_running
        return state
