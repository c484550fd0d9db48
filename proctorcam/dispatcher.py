import threading

from .eventlog import log_event


class _AllQueued:
    def __repr__(self):
        return "ALL"


ALL = _AllQueued()


class UploadBatch:
    def __init__(self, scope, frames, metadata=None):
        self.scope = scope
        self.frames = list(frames)
        self.metadata = dict(metadata or {})

    def by_question(self):
        """Group frames per question id, keeping capture order within and across groups."""
        groups = {}
        for frame in self.frames:
            groups.setdefault(frame.question_id, []).append(frame)
        return list(groups.items())

    def __len__(self):
        return len(self.frames)


class UploadOutcome:
    def __init__(self, ok, sent=0, dropped=0, status=None, error=None, result=None):
        self.ok = ok
        self.sent = sent
        self.dropped = dropped
        self.status = status
        self.error = error
        self.result = result

    def as_dict(self):
        return {"success": self.ok, "sent": self.sent, "dropped": self.dropped,
                "status": self.status, "error": self.error}

    def __repr__(self):
        return f"UploadOutcome(ok={self.ok}, sent={self.sent}, dropped={self.dropped}, error={self.error!r})"


class UploadDispatcher:
    """Drains frames from the capture queue and hands them to a transport.

    Flushes for one session never overlap: a second flush blocks on the
    upload lock until the first finishes, then drains what is left. Frames
    of a batch that fails are dropped, not put back on the queue.
    """

    def __init__(self, queue, transport, session=None):
        self.queue = queue
        self.transport = transport
        self.session = session
        self.last_outcome = None
        self._upload_lock = threading.Lock()
        self._periodic = None

    def _metadata(self):
        return self.session.identity() if self.session is not None else {}

    def flush(self, scope=ALL):
        with self._upload_lock:
            if scope is ALL:
                frames = self.queue.drain()
            else:
                frames = self.queue.drain_question(scope)

            if not frames:
                outcome = UploadOutcome(True, sent=0)
                self.last_outcome = outcome
                return outcome

            batch = UploadBatch(scope, frames, self._metadata())
            if self.session is not None:
                self.session.begin_upload()
            log_event("UPLOAD", f"submitting {len(batch)} frames for {scope!r}")
            try:
                result = self.transport.send(batch)
            except Exception as e:
                log_event("UPLOAD_ERROR", f"transport raised: {e}")
                outcome = UploadOutcome(False, dropped=len(batch), status=500, error=str(e))
            else:
                if result.ok:
                    outcome = UploadOutcome(True, sent=len(batch), status=result.status, result=result)
                else:
                    sent = min(result.sent or 0, len(batch))
                    outcome = UploadOutcome(False, sent=sent, dropped=len(batch) - sent, status=result.status,
                                            error=result.error or f"upload failed with {result.status}",
                                            result=result)

            if outcome.ok:
                log_event("UPLOAD", f"submitted {outcome.sent} frames for {scope!r}")
            else:
                log_event("UPLOAD_FAILED", f"dropped {outcome.dropped} frames for {scope!r} "
                                           f"({outcome.sent} delivered): {outcome.error}")
            if self.session is not None:
                self.session.finish_upload(outcome.ok, outcome.error)
            self.last_outcome = outcome
            return outcome

    def flush_async(self, scope=ALL):
        # non-daemon: an in-flight upload is allowed to finish on shutdown
        thread = threading.Thread(target=self.flush, args=(scope,), name=f"upload-{scope!r}")
        thread.start()
        return thread

    def start_periodic(self, scheduler, interval_ms):
        if self._periodic is not None:
            return False
        self._periodic = scheduler.call_every(interval_ms, self.flush)
        return True

    def stop_periodic(self):
        task, self._periodic = self._periodic, None
        if task is not None:
            task.cancel()
