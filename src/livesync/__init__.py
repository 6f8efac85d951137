"""Realtime event-merge engine for live LMS collections."""

__version__ = "0.1.0"
