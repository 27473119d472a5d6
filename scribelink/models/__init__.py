"""Data models for the ScribeLink application."""

from .audio import AudioFormat, AudioStats
from .segment import Segment, SegmentUploadState, PENDING_STATES
from .session import Session, SessionStatus
from .events import UploadStatus, UploadProgressEvent, SessionEvent

__all__ = [
    "AudioFormat",
    "AudioStats",
    "Segment",
    "SegmentUploadState",
    "PENDING_STATES",
    "Session",
    "SessionStatus",
    # Pub/sub events
    "UploadStatus",
    "UploadProgressEvent",
    "SessionEvent",
]
