"""Local persistence: segment records, session metadata and file layout."""

from .segment_store import SegmentStore, calculate_checksum
from .file_manager import FileManager

__all__ = [
    "SegmentStore",
    "calculate_checksum",
    "FileManager",
]
