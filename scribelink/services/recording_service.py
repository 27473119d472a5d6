"""Session orchestrator: drives capture, segmentation and upload for one recording session."""

import time
import asyncio
import logging
import threading
from typing import Optional, Dict, List, Any
from datetime import datetime
from pathlib import Path

from pubsub import pub

from .session_manager import SessionManager, SessionEventPublisher
from ..audio.audio_pub import SegmentPublisher, LevelPublisher
from ..audio.capture import AbstractCapture, AudioCapture
from ..audio.segmenter import LiveSegmenter
from ..config import ScribeLinkConfig
from ..errors import BackendError, CaptureError, SessionError
from ..models.segment import Segment
from ..models.session import Session, SessionStatus
from ..storage.file_manager import FileManager
from ..storage.segment_store import SegmentStore
from ..upload.base import AbstractUploadBackend
from ..upload.http_backend import HttpUploadBackend
from ..upload.pipeline import UploadPipeline
from ..upload.publisher import UploadProgressPublisher

logger = logging.getLogger(__name__)


class RecordingService:
    """Coordinates start / pause / resume / stop across capture, segmenter and upload pipeline.

    Segmentation and upload are decoupled through the segment store: the
    segmenter publishes each carved segment, this service persists it via
    the pipeline, and the pipeline's worker picks it up from the store.
    Session-level failures (capture, session creation) raise; everything
    else is reported in the returned result dicts.
    """

    def __init__(self,
                 config: ScribeLinkConfig,
                 store: Optional[SegmentStore] = None,
                 file_manager: Optional[FileManager] = None,
                 backend: Optional[AbstractUploadBackend] = None,
                 capture: Optional[AbstractCapture] = None):
        """Initialize recording service.

        Args:
            config: Application configuration
            store: Segment record store; created under the data directory if omitted
            file_manager: Session directory layout; created under the data directory if omitted
            backend: Upload backend; an HttpUploadBackend for backend.base_url if omitted
            capture: Capture collaborator; a PyAudio AudioCapture if omitted
        """
        self.config = config
        data_dir = config.get_data_directory()
        self.audio_format = config.get_audio_format()

        self.store = store or SegmentStore(data_dir)
        self.file_manager = file_manager or FileManager(data_dir)
        self.backend = backend or HttpUploadBackend(
            config.get_backend_url(),
            api_version=config.get('backend.api_version', 'v1'),
            request_timeout=float(config.get('upload.request_timeout_seconds', 30.0)),
        )
        self.level_publisher = LevelPublisher()
        self.capture = capture or AudioCapture(
            self.audio_format,
            chunk_size=int(config.get('audio.chunk_size', 1024)),
            level_callback=self.level_publisher.publish_level,
        )

        self.segment_publisher = SegmentPublisher()
        self.segmenter = LiveSegmenter(
            self.audio_format,
            callback=self.segment_publisher.get_callback(),
            segment_duration_seconds=float(config.get('segmenter.segment_duration_seconds', 5)),
            poll_interval_seconds=float(config.get('segmenter.poll_interval_seconds', 2.0)),
        )

        self.progress_publisher = UploadProgressPublisher()
        self.pipeline = UploadPipeline(
            self.store,
            self.backend,
            progress_callback=self.progress_publisher.get_callback(),
            max_retry_attempts=int(config.get('upload.max_retry_attempts', 3)),
            retry_delay_seconds=float(config.get('upload.retry_delay_seconds', 2.0)),
            poll_interval_seconds=float(config.get('upload.poll_interval_seconds', 2.0)),
            step_timeout_seconds=float(config.get('upload.request_timeout_seconds', 30.0)),
        )

        self.session_manager = SessionManager(self.file_manager, self.store,
                                              SessionEventPublisher().get_callback())
        self.stuck_threshold_seconds = float(config.get('upload.stuck_threshold_seconds', 120.0))
        self.drain_poll_interval = min(self.pipeline.poll_interval_seconds, 0.5)

        # Recording state
        self.current_session: Optional[Session] = None
        self.is_recording = False
        self.is_paused = False
        self._elapsed_before_pause = 0.0
        self._running_since: Optional[float] = None
        self._restart_lock = threading.Lock()

        self.capture.set_interruption_callback(self._on_capture_interrupted)
        pub.subscribe(self._on_segment_created, self.segment_publisher.topic)
        logger.info("RecordingService ready")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_recording(self, subject_id: str, owner_id: str) -> Dict[str, Any]:
        """Create a session and start capture, segmentation and upload.

        Raises:
            SessionError: the backend could not create the session
            CaptureError: the microphone could not be opened; no local session is left behind

        Returns:
            Result dictionary with success status and details
        """
        if self.is_recording:
            return {
                "success": False,
                "error": "Already recording",
                "session_id": self.current_session.session_id,
            }

        try:
            session_id = asyncio.run(self.backend.create_session(subject_id, owner_id))
        except BackendError as e:
            raise SessionError(f"Could not create session: {e}") from e
        logger.info(f"Backend issued session: {session_id}")

        recording_path = self.file_manager.recording_file_path(session_id, 0)
        self.file_manager.create_session_directory(session_id)
        try:
            self.capture.start_capture(str(recording_path), self.audio_format.sample_rate)
        except CaptureError:
            self.file_manager.delete_session_directory(session_id)
            raise

        session = self.session_manager.create_session(session_id, subject_id, owner_id)
        session.recording_files.append(str(recording_path))
        self._begin(session, recording_path, starting_sequence_number=0)

        logger.info(f"Started recording for session: {session_id}")
        return {
            "success": True,
            "session_id": session_id,
            "recording_file": str(recording_path),
            "started_at": datetime.now().isoformat(),
        }

    def resume_session(self, session_id: str) -> Dict[str, Any]:
        """Continue an existing session with a new recording file.

        Sequence numbers continue from the highest one stored for the session.

        Raises:
            SessionError: the session is unknown locally
            CaptureError: the microphone could not be opened
        """
        if self.is_recording:
            return {"success": False, "error": "Already recording",
                    "session_id": self.current_session.session_id}

        session = self.session_manager.load(session_id)
        if session is None:
            raise SessionError(f"Unknown session: {session_id}")

        self.current_session = session
        recovered = self._recover_leftover_audio(session)
        next_sequence = self.store.next_sequence_number(session_id)
        recording_path = self.file_manager.recording_file_path(session_id, len(session.recording_files))
        try:
            self.capture.start_capture(str(recording_path), self.audio_format.sample_rate)
        except CaptureError:
            self.current_session = None
            raise

        session.recording_files.append(str(recording_path))
        session.end_time = None
        self._begin(session, recording_path, starting_sequence_number=next_sequence)

        logger.info(f"Resumed session {session_id} at sequence {next_sequence}")
        return {
            "success": True,
            "session_id": session_id,
            "recording_file": str(recording_path),
            "next_sequence_number": next_sequence,
            "recovered_segments": len(recovered),
        }

    def _recover_leftover_audio(self, session: Session) -> List[Segment]:
        """Carve audio the last recording file holds beyond what was already segmented.

        A cleanly stopped file was flushed in full and yields nothing; a file
        left behind by a crash yields its uncarved tail.
        """
        if not session.recording_files:
            return []
        last_file = session.recording_files[-1]
        carved = self.store.carved_bytes(session.session_id, last_file)
        return self.segmenter.recover(session.session_id, last_file, carved,
                                      starting_sequence_number=self.store.next_sequence_number(session.session_id),
                                      segments_dir=str(self.file_manager.get_chunks_dir(session.session_id)))

    def _begin(self, session: Session, recording_path: Path, starting_sequence_number: int) -> None:
        self.current_session = session
        self.segmenter.start(session.session_id, str(recording_path),
                             starting_sequence_number=starting_sequence_number,
                             segments_dir=str(self.file_manager.get_chunks_dir(session.session_id)))
        if not self.pipeline.is_running:
            self.pipeline.start()

        self.is_recording = True
        self.is_paused = False
        self._elapsed_before_pause = 0.0
        self._running_since = time.monotonic()
        self.session_manager.set_status(session, SessionStatus.RECORDING,
                                        recording_file=str(recording_path))

    def pause_recording(self) -> Dict[str, Any]:
        """Pause capture. Already carved segments keep uploading."""
        if not self.is_recording or self.is_paused:
            return {"success": False, "error": "Not recording"}

        self.capture.pause_capture()
        self._elapsed_before_pause = self.get_elapsed_seconds()
        self._running_since = None
        self.is_paused = True
        self.session_manager.set_status(self.current_session, SessionStatus.PAUSED)
        return {"success": True, "session_id": self.current_session.session_id,
                "elapsed_seconds": self._elapsed_before_pause}

    def resume_recording(self) -> Dict[str, Any]:
        if not self.is_recording or not self.is_paused:
            return {"success": False, "error": "Not paused"}

        self.capture.resume_capture()
        self._running_since = time.monotonic()
        self.is_paused = False
        self.session_manager.set_status(self.current_session, SessionStatus.RECORDING)
        return {"success": True, "session_id": self.current_session.session_id}

    def stop_recording(self) -> Dict[str, Any]:
        """Stop capture, flush the segmenter and wait for the upload queue to drain.

        The session is closed as COMPLETED when every segment has left the
        queue, or INCOMPLETE when the queue stopped making progress for
        longer than the stuck threshold.
        """
        if not self.is_recording:
            return {"success": False, "error": "Not recording"}

        session = self.current_session
        elapsed = self.get_elapsed_seconds()

        # Capture first so the flush sees every byte and the final header sizes
        with self._restart_lock:
            self.capture.stop_capture()
            flushed = self.segmenter.stop()
            self.is_recording = False
        self.is_paused = False
        self._running_since = None
        self._elapsed_before_pause = elapsed

        self.session_manager.set_status(session, SessionStatus.STOPPING)
        drained = self._await_drain(session.session_id)

        if drained:
            self.session_manager.reconcile_counts(session)
            try:
                asyncio.run(self.backend.complete_session(session.session_id, session.total_segments))
            except Exception as e:
                # Local close must not depend on the completion call
                logger.warning(f"Could not mark session {session.session_id} complete on backend: {e!r}")
            status = SessionStatus.COMPLETED
        else:
            status = SessionStatus.INCOMPLETE
            logger.warning(f"Session {session.session_id} closed with "
                           f"{self.store.count_pending(session.session_id)} segments still outstanding")

        self.session_manager.set_status(session, status, elapsed_seconds=elapsed)
        logger.info(f"Session stopped: {session.session_id} ({status.value})")

        return {
            "success": True,
            "session_id": session.session_id,
            "stopped_at": datetime.now().isoformat(),
            "duration_seconds": elapsed,
            "flushed_segments": len(flushed),
            "total_segments": session.total_segments,
            "confirmed_segments": session.confirmed_segments,
            "failed_segments": session.failed_segments,
            "pending_segments": self.store.count_pending(session.session_id),
            "status": status.value,
            "safely_stopped": drained,
        }

    def _await_drain(self, session_id: str) -> bool:
        """Poll the queue depth until it is zero or has not moved for the stuck threshold."""
        self.pipeline.trigger()
        last_depth = self.store.count_pending(session_id)
        last_progress = time.monotonic()
        while last_depth > 0:
            if time.monotonic() - last_progress >= self.stuck_threshold_seconds:
                logger.warning(f"Upload queue stuck at {last_depth} segments for "
                               f"{self.stuck_threshold_seconds}s")
                return False
            time.sleep(self.drain_poll_interval)
            depth = self.store.count_pending(session_id)
            if depth != last_depth:
                last_depth = depth
                last_progress = time.monotonic()
        return True

    def handle_capture_restart(self, new_recording_path: str) -> Dict[str, Any]:
        """Point the segmenter at a new physical file the capture layer switched to.

        The old file is flushed first; numbering continues without a gap.
        """
        if not self.is_recording:
            return {"success": False, "error": "Not recording"}

        flushed = self.segmenter.stop()
        next_sequence = max(self.segmenter.next_sequence_number,
                            self.store.next_sequence_number(self.current_session.session_id))
        self.segmenter.start(self.current_session.session_id, new_recording_path,
                             starting_sequence_number=next_sequence,
                             segments_dir=str(self.file_manager.get_chunks_dir(self.current_session.session_id)))
        self.current_session.recording_files.append(str(new_recording_path))
        self.session_manager.save(self.current_session)

        logger.info(f"Capture restarted into {new_recording_path}; continuing at sequence {next_sequence}")
        return {"success": True, "flushed_segments": len(flushed), "next_sequence_number": next_sequence}

    def _on_capture_interrupted(self, path: str, error: Exception) -> None:
        """Capture thread callback: the device failed while writing path."""
        logger.warning(f"Capture interrupted while writing {path}: {error}")
        # The capture thread cannot join itself, so the restart runs elsewhere
        restart_thread = threading.Thread(target=self._restart_capture, daemon=True)
        restart_thread.name = "CaptureRestartThread"
        restart_thread.start()

    def _restart_capture(self) -> None:
        """Finalize the interrupted file and continue the session in the next one."""
        with self._restart_lock:
            if not self.is_recording:
                return
            session = self.current_session
            self.capture.stop_capture()

            new_path = self.file_manager.recording_file_path(session.session_id, len(session.recording_files))
            try:
                self.capture.start_capture(str(new_path), self.audio_format.sample_rate)
            except CaptureError as e:
                logger.error(f"Could not restart capture for session {session.session_id}: {e}")
                self.session_manager.publish(session.session_id, "capture_failed", error=str(e))
                return
            if self.is_paused:
                self.capture.pause_capture()

            result = self.handle_capture_restart(str(new_path))
            self.session_manager.publish(session.session_id, "capture_restarted",
                                         recording_file=str(new_path),
                                         next_sequence_number=result.get("next_sequence_number"))

    def _on_segment_created(self, segment: Segment) -> None:
        """Persist a freshly carved segment into the upload queue."""
        if self.current_session is None or segment.session_id != self.current_session.session_id:
            return
        self.pipeline.enqueue(segment)

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def get_elapsed_seconds(self) -> float:
        """Recorded wall time of the current session, excluding pauses."""
        elapsed = self._elapsed_before_pause
        if self._running_since is not None:
            elapsed += time.monotonic() - self._running_since
        return elapsed

    def retry_failed(self, segment_id: Optional[str] = None, session_id: Optional[str] = None) -> int:
        """Reset failed segments so the pipeline retries them."""
        return self.pipeline.retry_failed(segment_id=segment_id, session_id=session_id)

    def get_segment_statuses(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Per-segment upload status of a session, in sequence order."""
        if session_id is None:
            if self.current_session is None:
                return []
            session_id = self.current_session.session_id
        return [
            {
                "sequence_number": s.sequence_number,
                "segment_id": s.segment_id,
                "state": s.upload_state.value,
                "retry_count": s.retry_count,
                "size_bytes": s.size_bytes,
                "duration_seconds": s.duration_seconds,
                "error": s.error_message,
            }
            for s in self.store.get_segments_by_session(session_id)
        ]

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_recording": self.is_recording,
            "is_paused": self.is_paused,
            "session_id": self.current_session.session_id if self.current_session else None,
            "elapsed_seconds": self.get_elapsed_seconds(),
            "queue_depth": self.pipeline.queue_depth,
            "segmenter": self.segmenter.get_progress(),
        }

    def cleanup(self) -> None:
        """Stop everything still running and release the segment topic."""
        if self.is_recording:
            self.capture.stop_capture()
            self.segmenter.stop()
            self.is_recording = False
        self.pipeline.stop()
        try:
            pub.unsubscribe(self._on_segment_created, self.segment_publisher.topic)
        except Exception as e:
            logger.warning(f"Error during unsubscribe: {e}")
        logger.info("RecordingService cleaned up")
