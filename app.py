import os
import time
import uuid
from datetime import datetime, timezone

from flask import Flask, request, jsonify, send_from_directory, url_for

from proctorcam import config
from proctorcam.auth import check_session_access, session_token
from proctorcam.eventlog import initialize_log, log_event
from proctorcam.storage import ImageStore, is_image_bytes
from proctorcam.transport import BackendClient

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = 64 * 1024 * 1024  # whole eye-tracking batches
app.config["MAX_IMAGE_BYTES"] = config.MAX_IMAGE_BYTES
app.config["FORWARD_WEBCAM"] = config.FORWARD_WEBCAM

# ========== Collaborators ==========
backend = BackendClient(config.BACKEND_URL)
image_store = ImageStore(config.UPLOAD_DIR)


# ========== Utilities ==========
def error_response(message, status):
    return jsonify({"success": False, "error": message}), status


def backend_error(result, service):
    """Map a failed backend call to the reply sent to the browser."""
    if result.exhausted:
        return jsonify({
            "success": False,
            "message": f"Failed to connect to {service} service. Please try again later.",
        }), 503
    if result.status == 404:
        message = f"No {'suitable questions' if service == 'question' else 'score'} found for the given parameters."
    elif result.status in (401, 403):
        message = f"Not authorized to access the {service} service."
    else:
        message = f"Failed to retrieve {service} from the backend service."
    log_event("BACKEND_ERROR", f"{service}: {result.status} {result.text[:200]}")
    return jsonify({"success": False, "message": message, "details": result.text}), result.status


def now_ms():
    return int(time.time() * 1000)


# ========== Eye tracking ==========
@app.route("/api/eye-tracking", methods=["POST"])
def eye_tracking():
    """Forward a batch of eye tracking images for one question to the backend."""
    try:
        question_id = request.form.get("questionId")
        if not question_id:
            return error_response("Missing questionId", 400)

        images = request.files.getlist("images")
        timestamps = request.form.getlist("timestamps")
        if not images:
            return error_response("No images provided", 400)

        log_event("EYE_TRACKING", f"Received {len(images)} eye tracking images for question {question_id}")

        parts = []
        for index, image in enumerate(images):
            filename = image.filename or f"image-{index}.jpg"
            parts.append((filename, image.read(), image.mimetype or "image/jpeg"))

        result = backend.submit_eye_data(question_id, parts, timestamps[:len(parts)])
        if result.exhausted:
            return error_response("Failed to connect to backend API", 503)
        if not result.ok:
            log_event("BACKEND_ERROR", f"eye tracking: {result.status} {result.text[:200]}")
            return jsonify({
                "success": False,
                "error": "Backend API error",
                "status": result.status,
                "details": result.text,
            }), 502

        return jsonify({
            "success": True,
            "message": f"Successfully processed {len(images)} eye tracking images for question {question_id}",
            "backendResponse": result.body,
        })
    except Exception as e:
        log_event("EYE_TRACKING_ERROR", str(e))
        return error_response(str(e), 500)


# ========== Webcam monitoring ==========
@app.route("/api/webcam-monitoring", methods=["POST"])
def webcam_upload():
    """Store one webcam image captured during a question."""
    try:
        form = request.form
        user_id = form.get("userId", "").strip()
        exam_id = form.get("examId", "").strip()
        question_id = form.get("questionId", "").strip()
        session_id = form.get("sessionId", "").strip()
        image = request.files.get("image")

        if not user_id or not exam_id or not question_id or not session_id or image is None:
            return error_response("Missing required fields", 400)

        err, status = check_session_access(user_id, session_id)
        if err:
            return error_response(err, status)

        if not (image.mimetype or "").startswith("image/"):
            return error_response("Invalid file type. Only images are allowed.", 400)

        # check size
        image.stream.seek(0, os.SEEK_END)
        size = image.stream.tell()
        image.stream.seek(0)
        if size > app.config["MAX_IMAGE_BYTES"]:
            return error_response(f"Image size exceeded ({app.config['MAX_IMAGE_BYTES']} bytes max)", 413)

        data = image.read()
        if not is_image_bytes(data):
            return error_response("Could not decode uploaded image", 400)

        raw_ts = form.get("timestamp")
        try:
            timestamp = int(float(raw_ts)) if raw_ts else now_ms()
        except ValueError:
            return error_response("Invalid timestamp", 400)

        key = image_store.store(user_id, exam_id, session_id, question_id, timestamp, data)
        image_url = url_for("webcam_image", key=key)

        # audit trail
        ts_iso = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc).isoformat()
        log_event("WEBCAM_CAPTURE", f"user={user_id} exam={exam_id} question={question_id} "
                                    f"session={session_id} at={ts_iso} url={image_url}")

        if app.config["FORWARD_WEBCAM"]:
            fields = {"userId": user_id, "examId": exam_id, "questionId": question_id,
                      "sessionId": session_id, "timestamp": timestamp, "imageUrl": image_url}
            result = backend.submit_webcam(fields, (os.path.basename(key), data, "image/jpeg"))
            if not result.ok:
                return backend_error(result, "webcam")

        return jsonify({
            "success": True,
            "imageUrl": image_url,
            "message": "Image captured and stored successfully",
        })
    except Exception as e:
        log_event("WEBCAM_ERROR", str(e))
        return error_response(str(e), 500)


@app.route("/api/webcam-monitoring", methods=["GET"])
def webcam_list():
    try:
        user_id = request.args.get("userId")
        exam_id = request.args.get("examId")
        session_id = request.args.get("sessionId")
        question_id = request.args.get("questionId")

        if not user_id or not exam_id or not session_id:
            return error_response("Missing required parameters", 400)

        err, status = check_session_access(user_id, session_id)
        if err:
            return error_response(err, status)

        images = [
            {"url": url_for("webcam_image", key=item["key"]),
             "timestamp": item["timestamp"],
             "questionId": item["questionId"]}
            for item in image_store.list_images(user_id, exam_id, session_id, question_id)
        ]
        return jsonify({"success": True, "images": images})
    except Exception as e:
        log_event("WEBCAM_ERROR", f"retrieval failed: {e}")
        return error_response("Failed to retrieve webcam images", 500)


@app.route("/api/webcam-monitoring/image/<path:key>", methods=["GET"])
def webcam_image(key):
    return send_from_directory(image_store.root, key, mimetype="image/jpeg")


# ========== Adaptive questions ==========
@app.route("/api/cognitive-questions", methods=["POST"])
def cognitive_questions():
    try:
        data = request.get_json(force=True, silent=True)
        if not isinstance(data, dict) or not data.get("cognitiveState") or not data.get("subject"):
            return jsonify({
                "success": False,
                "message": "Missing required fields: cognitiveState and subject are required",
            }), 400

        state = data["cognitiveState"]
        if isinstance(state, dict):
            log_event("COGNITIVE_STATE", f"attention={state.get('attention')} fatigue={state.get('fatigue')} "
                                         f"confidence={state.get('confidence')} "
                                         f"question={state.get('questionId') or 'N/A'} subject={data['subject']}")

        result = backend.get_question(data)
        if not result.ok:
            return backend_error(result, "question")

        body = result.body
        if not isinstance(body, dict) or not body.get("question"):
            return jsonify({"success": False, "message": "Invalid question data returned from the backend"}), 502

        return jsonify({"success": True, **body})
    except Exception as e:
        log_event("QUESTION_ERROR", str(e))
        return jsonify({"success": False, "message": str(e)}), 500


@app.route("/api/cognitive-questions", methods=["GET"])
def cognitive_questions_info():
    return jsonify({
        "success": False,
        "message": "This endpoint requires a POST request with cognitive state data",
    }), 405


# ========== Scores ==========
@app.route("/api/exam-score", methods=["GET"])
def exam_score():
    try:
        exam_id = request.args.get("examId")
        session_id = request.args.get("sessionId")
        if not exam_id and not session_id:
            return jsonify({
                "success": False,
                "message": "Missing required parameters: either examId or sessionId is required",
            }), 400

        params = {}
        for name in ("examId", "userId", "sessionId", "subject"):
            value = request.args.get(name)
            if value:
                params[name] = value

        result = backend.get_marks(params)
        if not result.ok:
            return backend_error(result, "score")

        body = result.body
        if not isinstance(body, dict) or not isinstance(body.get("scoreDetails"), dict):
            return jsonify({"success": False, "message": "Invalid score data returned from the backend"}), 502

        return jsonify({"success": True, **body})
    except Exception as e:
        log_event("SCORE_ERROR", str(e))
        return jsonify({"success": False, "message": str(e)}), 500


# ========== Session ==========
@app.route("/api/session/start", methods=["POST"])
def start_session():
    data = request.get_json(force=True, silent=True)
    if not data:
        return jsonify({"success": False, "message": "Expected JSON body."}), 400

    user_id = str(data.get("userId") or "").strip()
    exam_id = str(data.get("examId") or "").strip()
    if not user_id or not exam_id:
        return jsonify({"success": False, "message": "userId and examId are required."}), 400

    session_id = uuid.uuid4().hex
    start_time = datetime.now(timezone.utc).isoformat()
    log_event("SESSION_START", f"user={user_id} exam={exam_id} session={session_id}")

    return jsonify({
        "success": True,
        "sessionId": session_id,
        "token": session_token(user_id, exam_id, session_id),
        "startTime": start_time,
        "message": "Session started successfully",
    })


@app.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True})


# ========== Run server ==========
if __name__ == "__main__":
    initialize_log()
    print("Starting Flask server at http://127.0.0.1:5000")
    app.run(debug=True)
