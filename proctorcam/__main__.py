"""Terminal driver for a capture session.

Stands in for the exam page: each stdin line is a command.

    q <id>   question changed
    flush    upload everything queued
    hide     page hidden (pause capture)
    show     page visible again
    status   print the capture status
    stop     stop capturing
    start    start (or restart after an error)
    quit     flush, release the camera and exit
"""
import argparse
import json
import sys

import requests

from . import config
from .capture import CameraSource
from .config import CaptureConfig
from .errors import ConfigError
from .eventlog import initialize_log
from .session import CaptureController, CaptureSession
from .transport import make_transport


def start_remote_session(http, server, user_id, exam_id):
    response = http.post(f"{server}/api/session/start", json={"userId": user_id, "examId": exam_id},
                         timeout=config.REQUEST_TIMEOUT)
    response.raise_for_status()
    body = response.json()
    return body["sessionId"], body.get("token")


def handle_command(controller, line):
    """Apply one command; returns False when the driver should exit."""
    parts = line.split(None, 1)
    if not parts:
        return True
    cmd = parts[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ""
    if cmd == "q" and arg:
        controller.on_question_change(arg)
    elif cmd == "flush":
        print(json.dumps(controller.flush().as_dict()))
    elif cmd == "hide":
        controller.set_visible(False)
    elif cmd == "show":
        controller.set_visible(True)
    elif cmd == "status":
        print(json.dumps(controller.snapshot()))
    elif cmd == "stop":
        controller.stop()
    elif cmd == "start":
        controller.start()
    elif cmd == "quit":
        return False
    else:
        print(f"unknown command: {line.strip()}")
    return True


def main(argv=None):
    parser = argparse.ArgumentParser(prog="proctorcam", description="Webcam capture agent for a proctored exam")
    parser.add_argument("--server", default="http://127.0.0.1:5000", help="Proxy service base URL")
    parser.add_argument("--user", required=True)
    parser.add_argument("--exam", required=True)
    parser.add_argument("--session", help="Existing session id (a new one is started when omitted)")
    parser.add_argument("--token", help="Bearer token for an existing session")
    parser.add_argument("--question", default="1", help="Question shown first")
    parser.add_argument("--channel", choices=[config.EYE_TRACKING, config.WEBCAM], default=config.EYE_TRACKING)
    parser.add_argument("--camera", type=int, default=0)
    parser.add_argument("--interval-ms", type=int, default=1000)
    parser.add_argument("--flush-interval-ms", type=int)
    parser.add_argument("--log-file", help="Also append events to this file")
    args = parser.parse_args(argv)

    if args.log_file:
        initialize_log(args.log_file)

    try:
        capture_config = CaptureConfig(channel=args.channel, interval_ms=args.interval_ms,
                                       flush_interval_ms=args.flush_interval_ms)
    except ConfigError as e:
        parser.error(str(e))

    server = args.server.rstrip("/")
    http = requests.Session()
    session_id, token = args.session, args.token
    if not session_id:
        try:
            session_id, token = start_remote_session(http, server, args.user, args.exam)
        except (requests.RequestException, KeyError, ValueError) as e:
            print(f"Could not start a session on {server}: {e}", file=sys.stderr)
            return 1
    if token:
        http.headers["Authorization"] = f"Bearer {token}"

    session = CaptureSession(args.user, args.exam, session_id, args.question)
    transport = make_transport(capture_config.channel, server, http=http)

    def open_camera():
        return CameraSource(args.camera, capture_config.width, capture_config.height).open()

    controller = CaptureController(session, open_camera, transport, capture_config)
    controller.start()
    print(f"session {session_id} {controller.status}; type 'quit' to finish")
    try:
        for line in sys.stdin:
            if not handle_command(controller, line):
                break
    except KeyboardInterrupt:
        pass
    finally:
        controller.stop()
        outcome = controller.flush()
        print(json.dumps(outcome.as_dict()))
        controller.teardown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
