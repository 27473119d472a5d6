"""Live segmenter: carves a continuously growing WAV recording into segment files."""

import os
import uuid
import logging
import threading
from pathlib import Path
from typing import Optional, Callable, List, Dict, Any

from .wav import scan_data_chunk, write_wav_file, STREAMING_SIZE
from ..errors import WavFormatError
from ..models.audio import AudioFormat
from ..models.segment import Segment

logger = logging.getLogger(__name__)

SEGMENT_FILE_PREFIX = "chunk_"
SEGMENT_FILE_EXTENSION = ".wav"


class LiveSegmenter:
    """Polls a recording file and emits fixed-size, self-contained segments.

    The source file is only ever opened for reading. Each physical file gets
    its own data offset resolution; the carved-bytes cursor advances by the
    exact number of bytes written into each segment.
    """

    def __init__(self,
                 audio_format: AudioFormat,
                 callback: Optional[Callable[[Segment], None]] = None,
                 segment_duration_seconds: float = 5.0,
                 poll_interval_seconds: float = 2.0):
        """Initialize the segmenter.

        Args:
            audio_format: PCM layout the capture layer records with
            callback: Called with every new Segment, in sequence order
            segment_duration_seconds: Target duration of each segment
            poll_interval_seconds: How often the recording file is checked
        """
        self.audio_format = audio_format
        self.callback = callback
        self.segment_duration_seconds = segment_duration_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.bytes_per_segment = audio_format.bytes_for_duration(segment_duration_seconds)
        if self.bytes_per_segment <= 0:
            raise ValueError(f"Segment duration {segment_duration_seconds}s yields no audio bytes")

        # Per-file state, reset by start()
        self.session_id: Optional[str] = None
        self.recording_file_path: Optional[Path] = None
        self.segments_dir: Optional[Path] = None
        self.next_sequence_number = 0
        self.data_offset: Optional[int] = None
        self.bytes_carved = 0

        # Poll thread management
        self.poll_thread: Optional[threading.Thread] = None
        self.stop_event = threading.Event()
        self.lock = threading.RLock()
        self.is_running = False

    def start(self, session_id: str, recording_file_path: str, starting_sequence_number: int = 0,
              segments_dir: Optional[str] = None) -> None:
        """Start polling a recording file.

        Args:
            session_id: Session the segments belong to
            recording_file_path: WAV file the capture layer is appending to
            starting_sequence_number: Sequence number of the first segment carved from this file
            segments_dir: Where segment files go; defaults to a 'chunks' directory beside the recording
        """
        if self.is_running:
            raise RuntimeError("Segmenter already running; call stop() before starting a new file")

        with self.lock:
            self.session_id = session_id
            self.recording_file_path = Path(recording_file_path)
            self.segments_dir = Path(segments_dir) if segments_dir else self.recording_file_path.parent / "chunks"
            self.next_sequence_number = starting_sequence_number
            self.data_offset = None
            self.bytes_carved = 0

        self.stop_event.clear()
        self.poll_thread = threading.Thread(target=self._poll_continuously, daemon=True)
        self.poll_thread.name = "SegmenterPollThread"
        self.is_running = True
        self.poll_thread.start()

        logger.info(f"Started segmenter for session {session_id}: {recording_file_path}, "
                    f"starting from sequence {starting_sequence_number}, "
                    f"{self.bytes_per_segment} bytes per segment")

    def stop(self) -> List[Segment]:
        """Stop polling and flush the remaining audio into a final segment.

        Safe to call when no full segment was ever produced, and when the
        segmenter was never started.

        Returns:
            Segments created by the flush
        """
        if self.is_running:
            self.stop_event.set()
            if self.poll_thread and self.poll_thread.is_alive():
                self.poll_thread.join(timeout=self.poll_interval_seconds + 5.0)
                if self.poll_thread.is_alive():
                    logger.warning("Segmenter poll thread did not stop cleanly")
            self.is_running = False

        if self.recording_file_path is None:
            return []

        with self.lock:
            created = self._carve_available(include_remainder=True)

        logger.info(f"Segmenter stopped for session {self.session_id}; "
                    f"flushed {len(created)} segments, next sequence {self.next_sequence_number}")
        return created

    def recover(self, session_id: str, recording_file_path: str, carved_bytes: int,
                starting_sequence_number: int, segments_dir: Optional[str] = None) -> List[Segment]:
        """Carve what an interrupted run left in a recording file past carved_bytes.

        Used when a session is resumed after the process died without flushing.
        The file's header may still hold streaming placeholder sizes.

        Returns:
            Segments created from the leftover audio
        """
        if self.is_running:
            raise RuntimeError("Segmenter is running; stop it before recovering another file")

        with self.lock:
            self.session_id = session_id
            self.recording_file_path = Path(recording_file_path)
            self.segments_dir = Path(segments_dir) if segments_dir else self.recording_file_path.parent / "chunks"
            self.next_sequence_number = starting_sequence_number
            self.data_offset = None
            self.bytes_carved = carved_bytes
            created = self._carve_available(include_remainder=True)

        logger.info(f"Recovered {len(created)} segments from {recording_file_path} "
                    f"past byte {carved_bytes}")
        return created

    def _poll_continuously(self) -> None:
        """Internal method: poll loop running in background thread."""
        while not self.stop_event.wait(self.poll_interval_seconds):
            try:
                self.poll_once()
            except Exception as e:
                # Cursors only advance after a segment is fully written, so the next tick retries
                logger.error(f"Error carving segments from {self.recording_file_path}: {e}", exc_info=True)

    def poll_once(self) -> List[Segment]:
        """Carve every whole segment currently available in the recording file."""
        with self.lock:
            return self._carve_available(include_remainder=False)

    def _resolve_data_offset(self) -> bool:
        """Resolve and cache where samples start in the current file."""
        if self.data_offset is not None:
            return True
        try:
            info = scan_data_chunk(self.recording_file_path)
        except WavFormatError as e:
            logger.warning(f"Recording header not usable yet: {e}")
            return False
        if info is None:
            logger.debug(f"Recording header not flushed yet: {self.recording_file_path}")
            return False
        self.data_offset = info.offset
        logger.info(f"Found audio data offset at: {self.data_offset}")
        return True

    def _data_end(self, file_size: int, final: bool) -> int:
        """Byte position where sample data ends in the source file.

        While recording the data chunk runs to the end of the file. Once the
        capture layer has finalized the header, trailing sub-chunks after the
        samples are excluded.
        """
        if not final:
            return file_size
        try:
            info = scan_data_chunk(self.recording_file_path)
        except WavFormatError:
            return file_size
        if info is None or info.declared_size in (0, STREAMING_SIZE):
            return file_size
        return min(file_size, info.offset + info.declared_size)

    def _carve_available(self, include_remainder: bool) -> List[Segment]:
        """Carve whole segments, plus the trailing remainder when flushing. Caller holds the lock."""
        created: List[Segment] = []
        if not self.recording_file_path.exists():
            logger.debug(f"Recording file does not exist yet: {self.recording_file_path}")
            return created
        if not self._resolve_data_offset():
            if include_remainder:
                logger.warning(f"No audio data offset for {self.recording_file_path}; nothing to flush")
            return created

        file_size = os.path.getsize(self.recording_file_path)
        data_end = self._data_end(file_size, final=include_remainder)
        unprocessed = data_end - self.data_offset - self.bytes_carved

        while unprocessed >= self.bytes_per_segment:
            segment = self._create_segment(self.bytes_per_segment)
            if segment is None:
                return created
            created.append(segment)
            unprocessed -= self.bytes_per_segment

        if include_remainder and unprocessed > 0:
            logger.info(f"Processing {unprocessed} bytes of remaining audio")
            segment = self._create_segment(unprocessed)
            if segment is not None:
                created.append(segment)

        return created

    def _create_segment(self, length: int) -> Optional[Segment]:
        """Copy length bytes past the cursor into a new segment file and emit it."""
        start = self.data_offset + self.bytes_carved
        with open(self.recording_file_path, 'rb') as f:
            f.seek(start)
            payload = f.read(length)
        if len(payload) < length:
            logger.debug(f"Short read at {start}: wanted {length}, got {len(payload)}")
            return None

        sequence_number = self.next_sequence_number
        segment_path = self.segments_dir / f"{SEGMENT_FILE_PREFIX}{sequence_number}{SEGMENT_FILE_EXTENSION}"
        size_bytes = write_wav_file(segment_path, payload, self.audio_format)

        segment = Segment(
            segment_id=str(uuid.uuid4()),
            session_id=self.session_id,
            sequence_number=sequence_number,
            local_path=str(segment_path),
            size_bytes=size_bytes,
            duration_seconds=self.audio_format.duration_for_bytes(length),
            source_path=str(self.recording_file_path),
            source_end=self.bytes_carved + length,
        )

        logger.info(f"Segment created: {segment.segment_id}, sequence: {sequence_number}, "
                    f"size: {size_bytes} bytes")
        if self.callback:
            self.callback(segment)

        # Advance only once the segment has been handed off; a failed hand-off re-carves this range
        self.bytes_carved += length
        self.next_sequence_number += 1
        return segment

    def get_progress(self) -> Dict[str, Any]:
        """Get current segmenting progress."""
        with self.lock:
            return {
                "session_id": self.session_id,
                "recording_file_path": str(self.recording_file_path) if self.recording_file_path else None,
                "next_sequence_number": self.next_sequence_number,
                "data_offset": self.data_offset,
                "bytes_carved": self.bytes_carved,
                "is_running": self.is_running,
            }
