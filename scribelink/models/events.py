"""Event models for the pub/sub upload and session architecture."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Any, Dict


class UploadStatus(Enum):
    """Named transitions reported on the upload progress topic."""
    UPLOADING = "uploading"   # Recorded -> Uploading
    UPLOADED = "uploaded"     # Uploading -> Uploaded
    RETRYING = "retrying"     # Uploading -> Recorded, attempts remain
    FAILED = "failed"         # * -> Failed
    VERIFIED = "verified"     # Uploaded -> Verified
    RESET = "reset"           # Failed -> Recorded, manual retry


@dataclass
class UploadProgressEvent:
    """One upload state transition for one segment."""
    segment_id: str
    sequence_number: int
    status: UploadStatus
    queue_depth: int
    retry_count: Optional[int] = None
    error: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class SessionEvent:
    """Session lifecycle event."""
    session_id: str
    event_type: str  # a SessionStatus value, "capture_restarted" or "capture_failed"
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)
