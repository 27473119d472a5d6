"""Services layer for ScribeLink session orchestration."""

from .recording_service import RecordingService
from .session_manager import SessionManager, SessionEventPublisher

__all__ = [
    "RecordingService",
    "SessionManager",
    "SessionEventPublisher",
]
