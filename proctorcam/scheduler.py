"""Repeating timers with explicit cancellation.

``ThreadScheduler`` drives the real capture agent. ``ManualScheduler`` keeps
a virtual clock that only moves when ``advance`` is called, so capture and
flush timing can be replayed exactly.
"""
import threading
import time

from .eventlog import log_event


class ScheduledTask:
    def __init__(self, interval_ms, fn):
        self.interval_ms = interval_ms
        self.fn = fn
        self._cancel = threading.Event()

    def cancel(self):
        self._cancel.set()

    @property
    def cancelled(self):
        return self._cancel.is_set()


def _run_tick(task):
    if task.cancelled:
        return
    try:
        task.fn()
    except Exception as e:
        log_event("TICK_ERROR", f"{getattr(task.fn, '__name__', task.fn)}: {e}")


class ThreadScheduler:
    def now_ms(self):
        return int(time.time() * 1000)

    def call_every(self, interval_ms, fn):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        task = ScheduledTask(interval_ms, fn)
        thread = threading.Thread(target=self._loop, args=(task,), daemon=True)
        thread.start()
        return task

    def _loop(self, task):
        # Event.wait doubles as the sleep and the cancellation check
        while not task._cancel.wait(task.interval_ms / 1000.0):
            _run_tick(task)


class _ManualTask(ScheduledTask):
    def __init__(self, interval_ms, fn, next_due):
        super().__init__(interval_ms, fn)
        self.next_due = next_due


class ManualScheduler:
    def __init__(self, start_ms=0):
        self._now = start_ms
        self._tasks = []

    def now_ms(self):
        return self._now

    def call_every(self, interval_ms, fn):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        task = _ManualTask(interval_ms, fn, self._now + interval_ms)
        self._tasks.append(task)
        return task

    @property
    def pending(self):
        return [t for t in self._tasks if not t.cancelled]

    def advance(self, ms):
        """Move the clock forward ``ms`` milliseconds, firing due ticks in order."""
        target = self._now + ms
        while True:
            due = [t for t in self._tasks if not t.cancelled and t.next_due <= target]
            if not due:
                break
            task = min(due, key=lambda t: t.next_due)
            self._now = task.next_due
            task.next_due += task.interval_ms
            _run_tick(task)
        self._now = target
        self._tasks = self.pending
