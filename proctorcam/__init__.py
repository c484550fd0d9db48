"""Webcam and eye-tracking capture for proctored exams."""

__version__ = "0.1.0"
