import json

import numpy as np
import pytest
import requests

from proctorcam.frames import CapturedFrame
from proctorcam.scheduler import ManualScheduler
from proctorcam.transport import TransportResult


def make_response(status, body=None, text=None):
    response = requests.Response()
    response.status_code = status
    if body is not None:
        response._content = json.dumps(body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = (text or "").encode("utf-8")
    response.encoding = "utf-8"
    return response


class FakeHTTP:
    """Stands in for requests.Session; replays responses or raises exceptions in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []
        self.headers = {}

    def _next(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)


class FakeSource:
    def __init__(self, frame="default", live=True):
        self.frame = np.full((48, 64, 3), 127, dtype=np.uint8) if frame == "default" else frame
        self.live = live
        self.released = False
        self.reads = 0

    def read(self):
        self.reads += 1
        return None if self.frame is None else self.frame.copy()

    def is_live(self):
        return self.live and not self.released

    def release(self):
        self.released = True


class RecordingTransport:
    def __init__(self, result=None, on_send=None):
        self.result = result or TransportResult(True, 200, body={"success": True}, attempts=1)
        self.on_send = on_send
        self.batches = []

    def send(self, batch):
        self.batches.append(batch)
        if self.on_send is not None:
            self.on_send(batch)
        return self.result


def frame(ts, question_id="q1", data=b"jpeg"):
    return CapturedFrame(data, ts, question_id)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def sleeps():
    return []
