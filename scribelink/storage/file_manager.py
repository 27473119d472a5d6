"""File management module for recordings, segment files and session metadata."""

import json
import logging
import shutil
from pathlib import Path
from typing import Optional, List

from ..models.session import Session


logger = logging.getLogger(__name__)

SESSION_INFO_FILENAME = "session_info.json"
CHUNKS_DIRNAME = "chunks"


class FileManager:
    """Manages file storage and organization for recordings and session metadata.

    Layout::

        <data_dir>/sessions/<session_id>/session_info.json
        <data_dir>/sessions/<session_id>/recording_<n>.wav
        <data_dir>/sessions/<session_id>/chunks/chunk_<sequence>.wav
    """

    def __init__(self, data_dir: str = "./data"):
        """Initialize file manager with data directory.

        Args:
            data_dir: Base directory for storing all data
        """
        self.data_dir = Path(data_dir)
        self.sessions_dir = self.data_dir / "sessions"
        self.logs_dir = self.data_dir / "logs"

        # Create directory structure
        self._ensure_directories()

        logger.info(f"FileManager initialized with data_dir: {self.data_dir}")

    def _ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        for directory in [self.data_dir, self.sessions_dir, self.logs_dir]:
            directory.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Ensured directory exists: {directory}")

    def create_session_directory(self, session_id: str) -> Path:
        """Create the directory tree for a session.

        Args:
            session_id: Session identifier issued by the backend

        Returns:
            Path to the session directory
        """
        session_path = self.sessions_dir / session_id
        (session_path / CHUNKS_DIRNAME).mkdir(parents=True, exist_ok=True)
        logger.info(f"Created session directory: {session_path}")
        return session_path

    def get_session_path(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def get_chunks_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id / CHUNKS_DIRNAME

    def recording_file_path(self, session_id: str, index: int) -> Path:
        """Path of the index-th physical recording file of a session."""
        return self.sessions_dir / session_id / f"recording_{index}.wav"

    def save_session_info(self, session: Session) -> str:
        """Save session information to JSON file.

        Args:
            session: Session to save

        Returns:
            Path to saved session info file
        """
        session_path = self.sessions_dir / session.session_id
        session_path.mkdir(parents=True, exist_ok=True)

        info_file = session_path / SESSION_INFO_FILENAME
        tmp_file = session_path / (SESSION_INFO_FILENAME + ".tmp")

        try:
            with open(tmp_file, 'w') as f:
                json.dump(session.to_dict(), f, indent=2)
            tmp_file.replace(info_file)

            logger.debug(f"Session info saved: {info_file}")
            return str(info_file)

        except Exception as e:
            logger.error(f"Error saving session info: {e}")
            raise

    def load_session_info(self, session_id: str) -> Optional[Session]:
        """Load session information from JSON file.

        Args:
            session_id: Session identifier

        Returns:
            Session object or None if not found
        """
        info_file = self.sessions_dir / session_id / SESSION_INFO_FILENAME

        if not info_file.exists():
            logger.warning(f"Session info file not found: {info_file}")
            return None

        try:
            with open(info_file, 'r') as f:
                data = json.load(f)
            return Session.from_dict(data)

        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Error loading session info: {e}")
            return None

    def list_sessions(self) -> List[str]:
        """List all session IDs that have saved metadata, sorted by name."""
        sessions = [
            path.name for path in self.sessions_dir.iterdir()
            if path.is_dir() and (path / SESSION_INFO_FILENAME).exists()
        ]
        sessions.sort()
        logger.debug(f"Found {len(sessions)} sessions")
        return sessions

    def delete_session_directory(self, session_id: str) -> bool:
        """Remove a session directory with everything in it."""
        session_path = self.sessions_dir / session_id
        if not session_path.exists():
            return False
        shutil.rmtree(session_path)
        logger.info(f"Deleted session directory: {session_path}")
        return True
