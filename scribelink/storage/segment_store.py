"""Durable segment record store.

Segment rows live in a single JSON document that is rewritten atomically
(write to a temporary file, then rename) after every mutation. All
read-modify-write operations run under one re-entrant lock, so two threads
can never flip the same segment's upload state concurrently.
"""

import os
import json
import hashlib
import logging
import threading
from pathlib import Path
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List, Iterable

from ..models.segment import Segment, SegmentUploadState

logger = logging.getLogger(__name__)

STORE_FILENAME = "segments.json"
STORE_VERSION = 1


def calculate_checksum(file_path: str) -> str:
    """Calculate MD5 checksum of a file for integrity checks."""
    digest = hashlib.md5()
    with open(file_path, 'rb') as f:
        for block in iter(lambda: f.read(64 * 1024), b''):
            digest.update(block)
    return digest.hexdigest()


class SegmentStore:
    """Persistent table of segment metadata and upload state."""

    def __init__(self, data_dir: str):
        """Open (or create) the store under data_dir.

        Args:
            data_dir: Directory holding the store file
        """
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.store_file = self.data_dir / STORE_FILENAME
        self.lock = threading.RLock()
        self._segments: Dict[str, Segment] = {}
        self._load()

        logger.info(f"SegmentStore initialized with {len(self._segments)} segments ({self.store_file})")

    def _load(self) -> None:
        if not self.store_file.exists():
            return
        with open(self.store_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
        for row in data.get('segments', []):
            segment = Segment.from_dict(row)
            self._segments[segment.segment_id] = segment

    def _flush(self) -> None:
        """Atomically rewrite the store file. Caller holds the lock."""
        data = {
            'version': STORE_VERSION,
            'updated_at': datetime.now().isoformat(),
            'segments': [s.to_dict() for s in self._segments.values()],
        }
        tmp_file = self.store_file.with_name(self.store_file.name + ".tmp")
        with open(tmp_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_file, self.store_file)

    @staticmethod
    def _sorted(segments: Iterable[Segment]) -> List[Segment]:
        return sorted((s.copy_with() for s in segments),
                      key=lambda s: (s.session_id, s.sequence_number))

    def save_segment(self, segment: Segment) -> Segment:
        """Insert or replace a segment row.

        The checksum is computed from the segment file the first time the
        row is persisted.

        Returns:
            The stored copy of the segment
        """
        if segment.checksum is None:
            segment = segment.copy_with(checksum=calculate_checksum(segment.local_path))
        with self.lock:
            self._segments[segment.segment_id] = segment.copy_with()
            self._flush()
        logger.info(f"Saved segment {segment.segment_id} (session={segment.session_id}, "
                    f"sequence={segment.sequence_number}, checksum={segment.checksum})")
        return segment.copy_with()

    def get_segment(self, segment_id: str) -> Optional[Segment]:
        with self.lock:
            segment = self._segments.get(segment_id)
            return segment.copy_with() if segment else None

    def update_state(self,
                     segment_id: str,
                     state: SegmentUploadState,
                     error_message: Optional[str] = None,
                     expected_states: Optional[Iterable[SegmentUploadState]] = None) -> Optional[Segment]:
        """Set a segment's upload state.

        Args:
            segment_id: Segment identifier
            state: New upload state
            error_message: Diagnostic to record; kept as-is when None
            expected_states: If given, only transition when the current state is one of these

        Returns:
            Updated segment, or None if not found or the current state did not match
        """
        with self.lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                logger.warning(f"Cannot update state of unknown segment {segment_id}")
                return None
            if expected_states is not None and segment.upload_state not in tuple(expected_states):
                logger.debug(f"Segment {segment_id} is {segment.upload_state.value}, "
                             f"not transitioning to {state.value}")
                return None
            segment.upload_state = state
            segment.last_attempt_time = datetime.now()
            if error_message is not None:
                segment.error_message = error_message
            self._flush()
            logger.info(f"Updated segment {segment_id} state to {state.value}")
            return segment.copy_with()

    def increment_retry_count(self, segment_id: str) -> int:
        """Atomically increment the retry counter and return the new value."""
        with self.lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                raise KeyError(segment_id)
            segment.retry_count += 1
            segment.last_attempt_time = datetime.now()
            self._flush()
            logger.info(f"Incremented retry count for segment {segment_id} to {segment.retry_count}")
            return segment.retry_count

    def reset_for_retry(self, segment_id: str) -> Optional[Segment]:
        """Move a failed segment back to Recorded with a fresh retry budget."""
        with self.lock:
            segment = self._segments.get(segment_id)
            if segment is None or segment.upload_state != SegmentUploadState.FAILED:
                return None
            segment.upload_state = SegmentUploadState.RECORDED
            segment.retry_count = 0
            segment.error_message = None
            segment.last_attempt_time = datetime.now()
            self._flush()
            logger.info(f"Reset segment {segment_id} for retry")
            return segment.copy_with()

    def retry_all_failed(self, session_id: Optional[str] = None) -> List[Segment]:
        """Reset every failed segment (optionally of one session) back to Recorded."""
        with self.lock:
            reset = []
            for segment in self._segments.values():
                if segment.upload_state != SegmentUploadState.FAILED:
                    continue
                if session_id is not None and segment.session_id != session_id:
                    continue
                segment.upload_state = SegmentUploadState.RECORDED
                segment.retry_count = 0
                segment.error_message = None
                segment.last_attempt_time = datetime.now()
                reset.append(segment)
            if reset:
                self._flush()
            logger.info(f"Reset {len(reset)} failed segments for retry")
            return self._sorted(reset)

    def get_segments_by_state(self, state: SegmentUploadState,
                              session_id: Optional[str] = None) -> List[Segment]:
        with self.lock:
            return self._sorted(
                s for s in self._segments.values()
                if s.upload_state == state and (session_id is None or s.session_id == session_id)
            )

    def get_pending_segments(self, session_id: Optional[str] = None) -> List[Segment]:
        """Recorded or Uploading segments, ordered by session then sequence number."""
        with self.lock:
            return self._sorted(
                s for s in self._segments.values()
                if s.is_pending and (session_id is None or s.session_id == session_id)
            )

    def count_pending(self, session_id: Optional[str] = None) -> int:
        with self.lock:
            return sum(
                1 for s in self._segments.values()
                if s.is_pending and (session_id is None or s.session_id == session_id)
            )

    def get_segments_by_session(self, session_id: str) -> List[Segment]:
        with self.lock:
            return self._sorted(s for s in self._segments.values() if s.session_id == session_id)

    def max_sequence_number(self, session_id: str) -> Optional[int]:
        """Highest sequence number recorded for a session, or None if it has no segments."""
        with self.lock:
            numbers = [s.sequence_number for s in self._segments.values() if s.session_id == session_id]
            return max(numbers) if numbers else None

    def next_sequence_number(self, session_id: str) -> int:
        highest = self.max_sequence_number(session_id)
        return 0 if highest is None else highest + 1

    def carved_bytes(self, session_id: str, source_path: str) -> int:
        """Payload bytes of a recording file already turned into segments of the session."""
        with self.lock:
            ends = [s.source_end for s in self._segments.values()
                    if s.session_id == session_id and s.source_path == str(source_path)]
            return max(ends) if ends else 0

    def verify_integrity(self, segment_id: str) -> bool:
        """Recompute the segment file checksum and compare it with the stored one."""
        segment = self.get_segment(segment_id)
        if segment is None or segment.checksum is None:
            return False
        try:
            current = calculate_checksum(segment.local_path)
        except OSError as e:
            logger.warning(f"Segment {segment_id} integrity check could not read file: {e}")
            return False
        if current != segment.checksum:
            logger.warning(f"Segment {segment_id} integrity check failed "
                           f"(expected {segment.checksum}, got {current})")
            return False
        return True

    def delete_segment(self, segment_id: str, delete_file: bool = True, discard: bool = False) -> bool:
        """Delete a segment row and optionally its file.

        Only Verified segments may be deleted unless discard is set, since an
        unverified file may be the only copy of that audio.

        Returns:
            True if a row was deleted
        """
        with self.lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                return False
            if segment.upload_state != SegmentUploadState.VERIFIED and not discard:
                raise ValueError(f"Refusing to delete segment {segment_id} in state "
                                 f"{segment.upload_state.value}; only verified segments can be deleted")
            if delete_file and segment.local_path:
                path = Path(segment.local_path)
                if path.exists():
                    path.unlink()
                    logger.info(f"Deleted local file: {path}")
            del self._segments[segment_id]
            self._flush()
            logger.info(f"Deleted segment {segment_id} from storage")
            return True

    def discard_session(self, session_id: str) -> int:
        """Delete every segment of a session, whatever its state."""
        with self.lock:
            segment_ids = [s.segment_id for s in self._segments.values() if s.session_id == session_id]
            for segment_id in segment_ids:
                self.delete_segment(segment_id, delete_file=True, discard=True)
        logger.info(f"Discarded {len(segment_ids)} segments of session {session_id}")
        return len(segment_ids)

    def cleanup_old_verified(self, days_old: int = 7) -> int:
        """Delete verified segments created more than days_old days ago."""
        cutoff = datetime.now() - timedelta(days=days_old)
        with self.lock:
            old_ids = [
                s.segment_id for s in self._segments.values()
                if s.upload_state == SegmentUploadState.VERIFIED and s.created_at < cutoff
            ]
            for segment_id in old_ids:
                self.delete_segment(segment_id)
        logger.info(f"Cleaned up {len(old_ids)} old verified segments")
        return len(old_ids)

    def get_storage_stats(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        """Count segments per upload state and sum their sizes."""
        with self.lock:
            segments = [s for s in self._segments.values()
                        if session_id is None or s.session_id == session_id]
        stats = {state.value: 0 for state in SegmentUploadState}
        for segment in segments:
            stats[segment.upload_state.value] += 1
        stats['total_segments'] = len(segments)
        stats['total_size_bytes'] = sum(s.size_bytes for s in segments)
        return stats
