"""Session-related data models."""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any


class SessionStatus(Enum):
    """Lifecycle of a recording session."""
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPING = "stopping"      # capture stopped, waiting for uploads to drain
    COMPLETED = "completed"    # every segment reached a terminal state
    INCOMPLETE = "incomplete"  # stopped while segments were still outstanding


@dataclass
class Session:
    """Information about a recording session.

    total_segments and confirmed_segments are snapshots recomputed from the
    segment store; they are never incremented in place.
    """
    session_id: str
    subject_id: str
    owner_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: SessionStatus = SessionStatus.RECORDING
    total_segments: int = 0
    confirmed_segments: int = 0
    failed_segments: int = 0
    recorded_seconds: float = 0.0
    recording_files: List[str] = field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.INCOMPLETE)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        data['start_time'] = self.start_time.isoformat()
        data['end_time'] = self.end_time.isoformat() if self.end_time else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        data = dict(data)
        data['status'] = SessionStatus(data.get('status', 'recording'))
        data['start_time'] = datetime.fromisoformat(data['start_time'])
        if data.get('end_time'):
            data['end_time'] = datetime.fromisoformat(data['end_time'])
        return cls(**data)
