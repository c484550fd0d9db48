import hashlib
import io
from pathlib import Path

from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename


def is_image_bytes(data):
    """True when Pillow can identify ``data`` as an image."""
    if not data:
        return False
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
        return True
    except (UnidentifiedImageError, OSError, ValueError):
        return False


QUESTION_ID_FILE = ".question-id"


def _component(value):
    return secure_filename(str(value)) or "_"


def image_key(user_id, exam_id, session_id, question_id, timestamp):
    # Format: webcam/userId/examId/sessionId/questionId/timestamp-hash.jpg
    digest = hashlib.sha256(
        f"{user_id}-{exam_id}-{question_id}-{session_id}-{timestamp}".encode("utf-8")
    ).hexdigest()[:12]
    parts = [_component(p) for p in (user_id, exam_id, session_id, question_id)]
    return "/".join(["webcam"] + parts + [f"{int(timestamp)}-{digest}.jpg"])


class ImageStore:
    """Webcam images on local disk, one directory per user/exam/session/question."""

    def __init__(self, root):
        self.root = Path(root)

    def store(self, user_id, exam_id, session_id, question_id, timestamp, data):
        key = image_key(user_id, exam_id, session_id, question_id, timestamp)
        out_path = self.root / key
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with open(out_path, "wb") as f:
            f.write(data)
        # directory names are sanitized; keep the id as sent
        (out_path.parent / QUESTION_ID_FILE).write_text(str(question_id), encoding="utf-8")
        return key

    def _question_id(self, directory):
        marker = directory / QUESTION_ID_FILE
        if marker.is_file():
            return marker.read_text(encoding="utf-8")
        return directory.name

    def list_images(self, user_id, exam_id, session_id, question_id=None):
        base = self.root / "webcam" / _component(user_id) / _component(exam_id) / _component(session_id)
        if not base.is_dir():
            return []
        pattern = f"{_component(question_id)}/*.jpg" if question_id else "*/*.jpg"
        images = []
        question_ids = {}
        for path in base.glob(pattern):
            stamp = path.name.split("-", 1)[0]
            if not stamp.isdigit():
                continue
            if path.parent not in question_ids:
                question_ids[path.parent] = self._question_id(path.parent)
            images.append({
                "key": path.relative_to(self.root).as_posix(),
                "questionId": question_ids[path.parent],
                "timestamp": int(stamp),
            })
        images.sort(key=lambda item: (item["timestamp"], item["key"]))
        return images
