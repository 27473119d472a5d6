"""Session manager for session records, lifecycle events and count reconciliation."""

import logging
from datetime import datetime
from typing import Dict, Any, List, Optional, Callable
from pathlib import Path

from pubsub import pub

from ..storage.file_manager import FileManager
from ..storage.segment_store import SegmentStore
from ..models.events import SessionEvent
from ..models.segment import SegmentUploadState
from ..models.session import Session, SessionStatus

logger = logging.getLogger(__name__)

SESSION_TOPIC = "session_events"


class SessionEventPublisher:
    """Publishes session lifecycle events using pubsub.pub for pub/sub architecture."""

    def __init__(self, topic: str = SESSION_TOPIC):
        self.topic = topic
        logger.info(f"SessionEventPublisher initialized with topic: {topic}")

    def publish_event(self, event: SessionEvent) -> None:
        pub.sendMessage(self.topic, event=event)
        logger.debug(f"Published session event: {event.session_id} {event.event_type}")

    def get_callback(self) -> Callable[[SessionEvent], None]:
        return self.publish_event


class SessionManager:
    """Manages session records on disk and keeps their counts in line with the segment store."""

    def __init__(self,
                 file_manager: FileManager,
                 store: SegmentStore,
                 event_callback: Optional[Callable[[SessionEvent], None]] = None):
        """Initialize session manager.

        Args:
            file_manager: Directory layout and session metadata storage
            store: Segment record store the counts are derived from
            event_callback: Receives session lifecycle events
        """
        self.file_manager = file_manager
        self.store = store
        self.event_callback = event_callback
        logger.info(f"SessionManager initialized with data dir: {file_manager.data_dir}")

    def create_session(self, session_id: str, subject_id: str, owner_id: str) -> Session:
        """Create the local record and directories for a backend-issued session id."""
        self.file_manager.create_session_directory(session_id)
        session = Session(
            session_id=session_id,
            subject_id=subject_id,
            owner_id=owner_id,
            start_time=datetime.now(),
        )
        self.save(session)
        logger.info(f"Created new session: {session_id}")
        return session

    def save(self, session: Session) -> None:
        self.file_manager.save_session_info(session)

    def load(self, session_id: str) -> Optional[Session]:
        return self.file_manager.load_session_info(session_id)

    def list_sessions(self) -> List[str]:
        return self.file_manager.list_sessions()

    def get_session_path(self, session_id: str) -> Path:
        return self.file_manager.get_session_path(session_id)

    def reconcile_counts(self, session: Session) -> Session:
        """Recompute the segment counts of a session from the store.

        confirmed_segments counts Uploaded and Verified segments.
        """
        segments = self.store.get_segments_by_session(session.session_id)
        session.total_segments = len(segments)
        session.confirmed_segments = sum(
            1 for s in segments
            if s.upload_state in (SegmentUploadState.UPLOADED, SegmentUploadState.VERIFIED)
        )
        session.failed_segments = sum(1 for s in segments if s.upload_state == SegmentUploadState.FAILED)
        session.recorded_seconds = sum(s.duration_seconds for s in segments)
        return session

    def set_status(self, session: Session, status: SessionStatus, **metadata) -> Session:
        """Change a session's status, persist it and publish the matching lifecycle event."""
        session.status = status
        if session.is_closed and session.end_time is None:
            session.end_time = datetime.now()
        self.reconcile_counts(session)
        self.save(session)
        self.publish(session.session_id, status.value, **metadata)
        return session

    def publish(self, session_id: str, event_type: str, **metadata) -> None:
        if not self.event_callback:
            return
        self.event_callback(SessionEvent(session_id=session_id, event_type=event_type, metadata=metadata))

    def get_session_summary(self, session_id: str) -> Dict[str, Any]:
        """Session record plus per-state segment counts."""
        session = self.load(session_id)
        if session is None:
            return {"success": False, "error": f"Unknown session: {session_id}"}
        self.reconcile_counts(session)
        return {
            "success": True,
            "session": session.to_dict(),
            "segments": self.store.get_storage_stats(session_id),
        }
