"""Mocked exam-session auth.

There is no user system behind this: ``/api/session/start`` hands out a
signed token for whatever user and exam it is given, and upload routes only
check that a presented token matches the user and session in the request.
Requests without a token are let through.
"""
from datetime import datetime, timedelta, timezone

import jwt
from flask import request

from . import config


def make_jwt(payload: dict):
    exp = datetime.now(timezone.utc) + timedelta(days=config.JWT_EXP_DAYS)
    payload_copy = dict(payload)
    payload_copy["exp"] = exp
    return jwt.encode(payload_copy, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_jwt(token):
    return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])


def session_token(user_id, exam_id, session_id):
    return make_jwt({"sub": user_id, "exam": exam_id, "sid": session_id})


def get_claims_from_auth_header():
    """Returns ``(claims, error)``; both are None when no token was sent."""
    auth = request.headers.get("Authorization", "")
    if not auth:
        return None, None
    if not auth.startswith("Bearer "):
        return None, "Invalid Authorization header"
    token = auth.split(" ", 1)[1].strip()
    try:
        return decode_jwt(token), None
    except jwt.ExpiredSignatureError:
        return None, "Token expired"
    except jwt.InvalidTokenError as e:
        return None, "Invalid token: " + str(e)


def check_session_access(user_id, session_id):
    """Returns ``(error_message, status)``, or ``(None, None)`` when access is allowed."""
    claims, err = get_claims_from_auth_header()
    if err:
        return err, 401
    if claims is None:
        return None, None
    if claims.get("sub") != user_id:
        return "Token does not belong to this user", 403
    if session_id is not None and claims.get("sid") != session_id:
        return "Token does not belong to this session", 403
    return None, None
