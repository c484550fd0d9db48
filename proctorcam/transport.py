"""Delivery to the proxy service and the ML/scoring backend.

Every outbound call goes through ``send_with_retry``: up to three attempts,
4xx answers are final, 5xx answers and network errors are retried after
``1s * 2**attempt`` (2s, then 4s). When the attempts run out the call is
reported as service-unavailable (503).
"""
import time

import requests

from . import config
from .eventlog import log_event
from .frames import frame_filename


class RetryPolicy:
    def __init__(self, max_attempts=None, base_delay=None, timeout=None):
        self.max_attempts = config.MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.base_delay = config.BACKOFF_BASE if base_delay is None else base_delay
        self.timeout = config.REQUEST_TIMEOUT if timeout is None else timeout
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_for(self, attempt):
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return self.base_delay * (2 ** attempt)


class TransportResult:
    def __init__(self, ok, status, body=None, text="", attempts=0, error=None, exhausted=False, sent=None):
        self.ok = ok
        self.status = status
        self.body = body
        self.text = text
        self.attempts = attempts
        self.error = error
        self.exhausted = exhausted
        # frames delivered, when the result covers several requests
        self.sent = sent

    def __repr__(self):
        return (f"TransportResult(ok={self.ok}, status={self.status}, attempts={self.attempts}, "
                f"error={self.error!r})")


def _success(response, attempts, label):
    try:
        body = response.json()
    except ValueError:
        log_event("BACKEND_ERROR", f"{label} returned malformed JSON")
        return TransportResult(False, 502, text=response.text, attempts=attempts,
                               error=f"{label} returned malformed data")
    return TransportResult(True, response.status_code, body=body, text=response.text, attempts=attempts)


def send_with_retry(send, policy=None, sleep=time.sleep, label="backend"):
    """Call ``send(timeout)`` until it yields a 2xx/4xx response or attempts run out."""
    policy = policy or RetryPolicy()
    error = None
    text = ""
    attempt = 0
    while attempt < policy.max_attempts:
        attempt += 1
        try:
            response = send(policy.timeout)
        except requests.RequestException as e:
            error = f"{label} unreachable: {e}"
            log_event("BACKEND_ATTEMPT", f"{label} attempt {attempt}/{policy.max_attempts} failed: {e}")
        else:
            status = response.status_code
            log_event("BACKEND_ATTEMPT", f"{label} attempt {attempt}/{policy.max_attempts} -> {status}")
            if 200 <= status < 300:
                return _success(response, attempt, label)
            if 400 <= status < 500:
                return TransportResult(False, status, text=response.text, attempts=attempt,
                                       error=f"{label} returned {status}")
            error = f"{label} returned {status}"
            text = response.text
        if attempt < policy.max_attempts:
            sleep(policy.delay_for(attempt))

    log_event("BACKEND_UNAVAILABLE", f"{label} failed after {attempt} attempts: {error}")
    return TransportResult(False, 503, text=text, attempts=attempt, error=error, exhausted=True)


def combine_results(results):
    """Fold several per-request results into one batch result.

    Each part's ``sent`` counts the frames it delivered; the folded result
    carries the total.
    """
    if not results:
        return TransportResult(True, 200, body=[], attempts=0, sent=0)
    failed = [r for r in results if not r.ok]
    attempts = sum(r.attempts for r in results)
    sent = sum(r.sent or 0 for r in results if r.ok)
    if not failed:
        return TransportResult(True, 200, body=[r.body for r in results], attempts=attempts, sent=sent)
    first = failed[0]
    return TransportResult(False, first.status, body=[r.body for r in results], text=first.text,
                           attempts=attempts, exhausted=first.exhausted, sent=sent,
                           error=f"{len(failed)} of {len(results)} uploads failed: {first.error}")


# ----------------- BACKEND (used by the proxy routes) -----------------
class BackendClient:
    def __init__(self, base_url=None, policy=None, http=None, sleep=time.sleep):
        self.base_url = (base_url or config.BACKEND_URL).rstrip("/")
        self.policy = policy or RetryPolicy()
        self.http = http or requests.Session()
        self.sleep = sleep

    def url(self, path):
        return self.base_url + path

    def _send(self, send, label):
        return send_with_retry(send, self.policy, self.sleep, label)

    def submit_eye_data(self, question_id, images, timestamps=()):
        """``images`` is a list of ``(filename, bytes, content_type)`` tuples."""
        url = self.url("/api/quiz/submit-eye-data")
        data = {"questionId": str(question_id)}
        if timestamps:
            data["timestamps"] = [str(ts) for ts in timestamps]
        files = [("images", image) for image in images]
        return self._send(lambda timeout: self.http.post(url, data=data, files=files, timeout=timeout),
                          "submit-eye-data")

    def submit_webcam(self, fields, image):
        url = self.url("/api/quiz/submit-webcam")
        data = {k: str(v) for k, v in fields.items()}
        files = [("image", image)]
        return self._send(lambda timeout: self.http.post(url, data=data, files=files, timeout=timeout),
                          "submit-webcam")

    def get_question(self, payload):
        url = self.url("/api/quiz/get_question")
        return self._send(lambda timeout: self.http.post(url, json=payload, timeout=timeout),
                          "get_question")

    def get_marks(self, params):
        url = self.url("/api/quiz/marks")
        headers = {"Accept": "application/json"}
        return self._send(lambda timeout: self.http.get(url, params=params, headers=headers, timeout=timeout),
                          "marks")


# ----------------- AGENT TRANSPORTS (used by the upload dispatcher) -----------------
class _ProxyTransport:
    path = None

    def __init__(self, server_url, policy=None, http=None, sleep=time.sleep):
        self.url = server_url.rstrip("/") + self.path
        self.policy = policy or RetryPolicy()
        self.http = http or requests.Session()
        self.sleep = sleep

    def _post(self, data, files, label):
        result = send_with_retry(
            lambda timeout: self.http.post(self.url, data=data, files=files, timeout=timeout),
            self.policy, self.sleep, label)
        result.sent = len(files) if result.ok else 0
        return result


class EyeTrackingTransport(_ProxyTransport):
    """One multipart request per question: ``questionId``, ``images[]``, ``timestamps[]``."""

    path = "/api/eye-tracking"

    def send(self, batch):
        results = []
        for question_id, frames in batch.by_question():
            data = {"questionId": str(question_id),
                    "timestamps": [str(f.captured_at_ms) for f in frames]}
            files = [("images", (frame_filename(f), f.data, f.content_type)) for f in frames]
            results.append(self._post(data, files, f"eye-tracking q={question_id}"))
        return combine_results(results)


class WebcamTransport(_ProxyTransport):
    """One request per frame, carrying the session metadata."""

    path = "/api/webcam-monitoring"

    def send(self, batch):
        results = []
        for frame in batch.frames:
            data = dict(batch.metadata)
            data["questionId"] = str(frame.question_id)
            data["timestamp"] = str(frame.captured_at_ms)
            files = [("image", (frame_filename(frame), frame.data, frame.content_type))]
            results.append(self._post(data, files, f"webcam ts={frame.captured_at_ms}"))
        failed = sum(1 for r in results if not r.ok)
        if failed:
            log_event("UPLOAD_WARN", f"{failed} images failed to upload")
        return combine_results(results)


def make_transport(channel, server_url, **kwargs):
    if channel == config.WEBCAM:
        return WebcamTransport(server_url, **kwargs)
    return EyeTrackingTransport(server_url, **kwargs)
