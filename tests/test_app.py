import io

import cv2
import numpy as np
import pytest
import requests

import app as server
from proctorcam.auth import decode_jwt, session_token
from proctorcam.storage import ImageStore
from proctorcam.transport import BackendClient, RetryPolicy

from conftest import FakeHTTP, make_response


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(server, "image_store", ImageStore(tmp_path / "uploads"))
    server.app.config["TESTING"] = True
    server.app.config["MAX_IMAGE_BYTES"] = 4 * 1024 * 1024
    return server.app.test_client()


@pytest.fixture
def backend(monkeypatch, sleeps):
    def install(*outcomes):
        http = FakeHTTP(*outcomes)
        monkeypatch.setattr(server, "backend", BackendClient(
            "http://backend", policy=RetryPolicy(3, 1.0, 5.0), http=http, sleep=sleeps.append))
        return http
    return install


def jpeg_bytes():
    ok, buf = cv2.imencode(".jpg", np.zeros((32, 32, 3), dtype=np.uint8))
    return buf.tobytes()


def eye_form(count=2, question_id="q1"):
    data = {"images": [(io.BytesIO(jpeg_bytes()), f"image-{i}.jpg", "image/jpeg") for i in range(count)],
            "timestamps": [str(1000 + i) for i in range(count)]}
    if question_id:
        data["questionId"] = question_id
    return data


def webcam_form(**overrides):
    data = {"userId": "u1", "examId": "e1", "questionId": "q1", "sessionId": "s1", "timestamp": "1700000000000",
            "image": (io.BytesIO(jpeg_bytes()), "image-1.jpg", "image/jpeg")}
    data.update(overrides)
    return {k: v for k, v in data.items() if v is not None}


# ----------------- eye tracking -----------------
def test_eye_tracking_requires_question_id(client, backend):
    http = backend()
    resp = client.post("/api/eye-tracking", data=eye_form(question_id=None), content_type="multipart/form-data")
    assert resp.status_code == 400
    assert resp.get_json() == {"success": False, "error": "Missing questionId"}
    assert http.calls == []


def test_eye_tracking_requires_images(client, backend):
    backend()
    resp = client.post("/api/eye-tracking", data={"questionId": "q1"}, content_type="multipart/form-data")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "No images provided"


def test_eye_tracking_forwards_batch(client, backend):
    http = backend(make_response(200, {"stored": 2}))
    resp = client.post("/api/eye-tracking", data=eye_form(2), content_type="multipart/form-data")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["message"] == "Successfully processed 2 eye tracking images for question q1"
    assert body["backendResponse"] == {"stored": 2}

    _, url, kwargs = http.calls[0]
    assert url == "http://backend/api/quiz/submit-eye-data"
    assert kwargs["data"] == {"questionId": "q1", "timestamps": ["1000", "1001"]}
    assert [f[1][0] for f in kwargs["files"]] == ["image-0.jpg", "image-1.jpg"]


def test_eye_tracking_backend_unreachable(client, backend, sleeps):
    backend(*[requests.ConnectionError("refused")] * 3)
    resp = client.post("/api/eye-tracking", data=eye_form(), content_type="multipart/form-data")
    assert resp.status_code == 503
    assert resp.get_json()["error"] == "Failed to connect to backend API"
    assert sleeps == [2.0, 4.0]


def test_eye_tracking_backend_client_error(client, backend):
    http = backend(make_response(422, text="bad batch"))
    resp = client.post("/api/eye-tracking", data=eye_form(), content_type="multipart/form-data")
    assert resp.status_code == 502
    body = resp.get_json()
    assert body["status"] == 422
    assert body["details"] == "bad batch"
    assert len(http.calls) == 1


# ----------------- webcam monitoring -----------------
def test_webcam_upload_stores_image(client):
    resp = client.post("/api/webcam-monitoring", data=webcam_form(), content_type="multipart/form-data")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["imageUrl"].startswith("/api/webcam-monitoring/image/webcam/u1/e1/s1/q1/1700000000000-")

    image = client.get(body["imageUrl"])
    assert image.status_code == 200
    assert image.data == jpeg_bytes()


def test_webcam_upload_forwards_to_backend_when_enabled(client, backend, monkeypatch):
    monkeypatch.setitem(server.app.config, "FORWARD_WEBCAM", True)
    http = backend(make_response(200, {"stored": True}))

    resp = client.post("/api/webcam-monitoring", data=webcam_form(), content_type="multipart/form-data")

    assert resp.status_code == 200
    _, url, kwargs = http.calls[0]
    assert url == "http://backend/api/quiz/submit-webcam"
    assert kwargs["data"]["sessionId"] == "s1"
    assert kwargs["data"]["timestamp"] == "1700000000000"
    assert kwargs["data"]["imageUrl"] == resp.get_json()["imageUrl"]
    assert kwargs["files"][0][1][1] == jpeg_bytes()


def test_webcam_forward_failure_is_reported(client, backend, monkeypatch, sleeps):
    monkeypatch.setitem(server.app.config, "FORWARD_WEBCAM", True)
    backend(*[requests.ConnectionError("refused")] * 3)

    resp = client.post("/api/webcam-monitoring", data=webcam_form(), content_type="multipart/form-data")

    assert resp.status_code == 503
    assert "webcam service" in resp.get_json()["message"]


def test_webcam_list_returns_images_in_time_order(client):
    for ts in ("3000", "1000", "2000"):
        client.post("/api/webcam-monitoring", data=webcam_form(timestamp=ts), content_type="multipart/form-data")
    client.post("/api/webcam-monitoring", data=webcam_form(timestamp="500", questionId="q2"),
                content_type="multipart/form-data")

    resp = client.get("/api/webcam-monitoring?userId=u1&examId=e1&sessionId=s1&questionId=q1")
    assert resp.status_code == 200
    assert [img["timestamp"] for img in resp.get_json()["images"]] == [1000, 2000, 3000]

    everything = client.get("/api/webcam-monitoring?userId=u1&examId=e1&sessionId=s1").get_json()["images"]
    assert [img["timestamp"] for img in everything] == [500, 1000, 2000, 3000]


def test_webcam_list_keeps_question_id_as_sent(client):
    question = "part 2/q \u00e4"
    resp = client.post("/api/webcam-monitoring", data=webcam_form(questionId=question),
                       content_type="multipart/form-data")
    assert resp.status_code == 200

    images = client.get("/api/webcam-monitoring", query_string={
        "userId": "u1", "examId": "e1", "sessionId": "s1", "questionId": question}).get_json()["images"]

    assert [img["questionId"] for img in images] == [question]
    assert client.get(images[0]["url"]).status_code == 200


def test_webcam_list_requires_parameters(client):
    resp = client.get("/api/webcam-monitoring?userId=u1")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Missing required parameters"


@pytest.mark.parametrize("missing", ["userId", "examId", "questionId", "sessionId", "image"])
def test_webcam_upload_missing_fields(client, missing):
    resp = client.post("/api/webcam-monitoring", data=webcam_form(**{missing: None}),
                       content_type="multipart/form-data")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Missing required fields"


def test_webcam_upload_rejects_non_images(client):
    form = webcam_form(image=(io.BytesIO(b"hello"), "notes.txt", "text/plain"))
    resp = client.post("/api/webcam-monitoring", data=form, content_type="multipart/form-data")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Invalid file type. Only images are allowed."


def test_webcam_upload_rejects_undecodable_image(client):
    form = webcam_form(image=(io.BytesIO(b"not really a jpeg"), "x.jpg", "image/jpeg"))
    resp = client.post("/api/webcam-monitoring", data=form, content_type="multipart/form-data")
    assert resp.status_code == 400


def test_webcam_upload_too_large(client):
    server.app.config["MAX_IMAGE_BYTES"] = 10
    resp = client.post("/api/webcam-monitoring", data=webcam_form(), content_type="multipart/form-data")
    assert resp.status_code == 413


def test_webcam_upload_with_matching_token(client):
    token = session_token("u1", "e1", "s1")
    resp = client.post("/api/webcam-monitoring", data=webcam_form(), content_type="multipart/form-data",
                       headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200


def test_webcam_upload_token_for_other_session(client):
    token = session_token("u1", "e1", "other")
    resp = client.post("/api/webcam-monitoring", data=webcam_form(), content_type="multipart/form-data",
                       headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 403


def test_webcam_upload_invalid_token(client):
    resp = client.post("/api/webcam-monitoring", data=webcam_form(), content_type="multipart/form-data",
                       headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401


def test_missing_image_file_is_404(client):
    assert client.get("/api/webcam-monitoring/image/webcam/nobody/x.jpg").status_code == 404


# ----------------- cognitive questions -----------------
COGNITIVE = {"cognitiveState": {"attention": 0.8, "fatigue": 0.1, "confidence": 0.7, "stress": 0.2,
                                "engagement": 0.9},
             "subject": "physics", "previousQuestionIds": [1, 2]}


def test_cognitive_questions_requires_fields(client, backend):
    backend()
    resp = client.post("/api/cognitive-questions", json={"subject": "physics"})
    assert resp.status_code == 400
    assert "cognitiveState and subject" in resp.get_json()["message"]


def test_cognitive_questions_success(client, backend):
    question = {"id": 7, "text": "F = ?", "options": [], "difficulty": "medium"}
    http = backend(make_response(200, {"question": question, "nextDifficulty": "hard"}))

    resp = client.post("/api/cognitive-questions", json=COGNITIVE)

    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "question": question, "nextDifficulty": "hard"}
    assert http.calls[0][2]["json"] == COGNITIVE


@pytest.mark.parametrize("status,fragment", [(404, "No suitable questions"), (401, "Not authorized"),
                                             (403, "Not authorized"), (409, "Failed to retrieve question")])
def test_cognitive_questions_backend_client_errors(client, backend, status, fragment):
    backend(make_response(status, text="details here"))
    resp = client.post("/api/cognitive-questions", json=COGNITIVE)
    assert resp.status_code == status
    body = resp.get_json()
    assert fragment in body["message"]
    assert body["details"] == "details here"


def test_cognitive_questions_unreachable(client, backend):
    backend(make_response(500), make_response(500), make_response(500))
    resp = client.post("/api/cognitive-questions", json=COGNITIVE)
    assert resp.status_code == 503


def test_cognitive_questions_missing_question_is_bad_gateway(client, backend):
    backend(make_response(200, {"message": "nothing"}))
    resp = client.post("/api/cognitive-questions", json=COGNITIVE)
    assert resp.status_code == 502


def test_cognitive_questions_get_not_allowed(client):
    resp = client.get("/api/cognitive-questions")
    assert resp.status_code == 405
    assert resp.get_json()["success"] is False


# ----------------- exam score -----------------
SCORE = {"score": 8, "totalQuestions": 10, "answeredQuestions": 9, "correctAnswers": 8, "incorrectAnswers": 1,
         "skippedQuestions": 1, "timeSpent": 600, "grade": "A", "percentageScore": 80.0}


def test_exam_score_requires_exam_or_session(client, backend):
    backend()
    resp = client.get("/api/exam-score?userId=u1")
    assert resp.status_code == 400


def test_exam_score_success_forwards_params(client, backend):
    http = backend(make_response(200, {"scoreDetails": SCORE}))
    resp = client.get("/api/exam-score?sessionId=s1&userId=u1&subject=math")

    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "scoreDetails": SCORE}
    assert http.calls[0][2]["params"] == {"userId": "u1", "sessionId": "s1", "subject": "math"}
    assert http.calls[0][2]["timeout"] == 5.0


def test_exam_score_not_found(client, backend):
    backend(make_response(404, text="no marks"))
    resp = client.get("/api/exam-score?examId=e1")
    assert resp.status_code == 404
    assert resp.get_json()["message"] == "No score found for the given parameters."


def test_exam_score_malformed_details(client, backend):
    backend(make_response(200, {"scoreDetails": "eight"}))
    assert client.get("/api/exam-score?examId=e1").status_code == 502


def test_exam_score_malformed_json(client, backend):
    backend(make_response(200, text="<html>"))
    assert client.get("/api/exam-score?examId=e1").status_code == 502


# ----------------- session -----------------
def test_session_start_issues_token(client):
    resp = client.post("/api/session/start", json={"userId": "u1", "examId": "e1"})
    assert resp.status_code == 200
    body = resp.get_json()
    claims = decode_jwt(body["token"])
    assert claims["sub"] == "u1"
    assert claims["sid"] == body["sessionId"]


def test_session_start_requires_ids(client):
    assert client.post("/api/session/start", json={"userId": "u1"}).status_code == 400
    assert client.post("/api/session/start", data="nope").status_code == 400


def test_health(client):
    assert client.get("/health").get_json() == {"ok": True}
