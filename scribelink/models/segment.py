"""Data models for carved audio segments and their upload lifecycle."""

from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum


class SegmentUploadState(Enum):
    """Upload lifecycle of a segment."""
    RECORDED = "recorded"    # carved, waiting to upload
    UPLOADING = "uploading"  # an attempt is in flight
    UPLOADED = "uploaded"    # pipeline believes delivery succeeded
    VERIFIED = "verified"    # backend acknowledged receipt
    FAILED = "failed"        # retries exhausted or integrity failure


PENDING_STATES = (SegmentUploadState.RECORDED, SegmentUploadState.UPLOADING)


@dataclass
class Segment:
    """One self-contained slice of a continuous recording."""
    segment_id: str
    session_id: str
    sequence_number: int
    local_path: str
    size_bytes: int
    duration_seconds: float
    upload_state: SegmentUploadState = SegmentUploadState.RECORDED
    checksum: Optional[str] = None
    retry_count: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    last_attempt_time: Optional[datetime] = None
    error_message: Optional[str] = None
    # Recording file this segment was carved from, and the payload bytes carved from it so far
    source_path: Optional[str] = None
    source_end: int = 0

    @property
    def is_pending(self) -> bool:
        return self.upload_state in PENDING_STATES

    @property
    def is_uploaded(self) -> bool:
        return self.upload_state in (SegmentUploadState.UPLOADED, SegmentUploadState.VERIFIED)

    def copy_with(self, **changes) -> "Segment":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['upload_state'] = self.upload_state.value
        data['created_at'] = self.created_at.isoformat()
        data['last_attempt_time'] = self.last_attempt_time.isoformat() if self.last_attempt_time else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Segment":
        data = dict(data)
        data['upload_state'] = SegmentUploadState(data.get('upload_state', 'recorded'))
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        if data.get('last_attempt_time'):
            data['last_attempt_time'] = datetime.fromisoformat(data['last_attempt_time'])
        return cls(**data)
