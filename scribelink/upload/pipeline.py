"""Durable, retrying upload pipeline for carved segments.

The queue is the set of Recorded/Uploading rows in the SegmentStore, not an
in-memory list, so a restarted process picks up exactly where the previous
one stopped. A single worker thread runs its own asyncio event loop and
drives one upload attempt at a time; backoff after a failure is tracked per
segment so one failing segment does not hold back the rest of the queue.
"""

import time
import asyncio
import logging
import threading
from pathlib import Path
from typing import Optional, Callable, Dict, List, Set

from .base import AbstractUploadBackend
from ..errors import IntegrityError, SessionNotFoundError
from ..models.events import UploadStatus, UploadProgressEvent
from ..models.segment import Segment, SegmentUploadState
from ..storage.segment_store import SegmentStore

logger = logging.getLogger(__name__)


class UploadPipeline:
    """Delivers Recorded segments through the reserve / transfer / confirm handshake."""

    def __init__(self,
                 store: SegmentStore,
                 backend: AbstractUploadBackend,
                 progress_callback: Optional[Callable[[UploadProgressEvent], None]] = None,
                 max_retry_attempts: int = 3,
                 retry_delay_seconds: float = 2.0,
                 poll_interval_seconds: float = 2.0,
                 step_timeout_seconds: float = 30.0):
        """Initialize the upload pipeline.

        Args:
            store: Durable segment record store
            backend: Remote backend implementing the upload handshake
            progress_callback: Receives one UploadProgressEvent per state transition
            max_retry_attempts: Attempts before a segment is marked failed
            retry_delay_seconds: Base delay of the linear backoff
            poll_interval_seconds: How often the worker rescans the store when idle
            step_timeout_seconds: Timeout of each network step
        """
        self.store = store
        self.backend = backend
        self.progress_callback = progress_callback
        self.max_retry_attempts = max_retry_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.step_timeout_seconds = step_timeout_seconds

        # Segment ids with an attempt running in this process
        self._in_flight: Set[str] = set()
        # Segment id -> monotonic time before which it must not be retried
        self._not_before: Dict[str, float] = {}
        self._queue_lock = threading.Lock()

        # Worker thread management
        self.worker_thread: Optional[threading.Thread] = None
        self.wakeup_event = threading.Event()
        self.shutdown_event = threading.Event()
        self.is_running = False

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def enqueue(self, segment: Segment) -> Segment:
        """Persist a segment and trigger processing. Does not wait for the upload.

        A segment already known to the store (same id) is not re-inserted.
        """
        existing = self.store.get_segment(segment.segment_id)
        if existing is not None:
            logger.debug(f"Segment {segment.segment_id} already queued ({existing.upload_state.value})")
            stored = existing
        else:
            stored = self.store.save_segment(segment)
            logger.info(f"Segment {stored.segment_id} added to upload queue")
        self.trigger()
        return stored

    def trigger(self) -> None:
        """Wake the worker so it scans the queue now."""
        self.wakeup_event.set()

    @property
    def queue_depth(self) -> int:
        """Number of outstanding segments, read from the store."""
        return self.store.count_pending()

    @property
    def pending_segments(self) -> List[Segment]:
        return self.store.get_pending_segments()

    def resume_pending_uploads(self) -> int:
        """Pick up whatever the previous process left behind.

        Call once at process start. Segments stuck in Uploading are counted
        as one interrupted attempt and made eligible again.

        Returns:
            Number of outstanding segments after recovery
        """
        for segment in self.store.get_segments_by_state(SegmentUploadState.UPLOADING):
            if segment.segment_id not in self._in_flight:
                self._recover_stale(segment)

        pending = self.store.count_pending()
        logger.info(f"Resuming {pending} pending uploads")
        if pending:
            self.trigger()
        return pending

    def retry_failed(self, segment_id: Optional[str] = None, session_id: Optional[str] = None) -> int:
        """Reset one failed segment, or every failed segment of a session, back to Recorded.

        Returns:
            Number of segments reset
        """
        if segment_id is not None:
            segment = self.store.reset_for_retry(segment_id)
            reset = [segment] if segment else []
        else:
            reset = self.store.retry_all_failed(session_id)

        for segment in reset:
            self._not_before.pop(segment.segment_id, None)
            self._emit(segment, UploadStatus.RESET, retry_count=0)

        logger.info(f"Retrying {len(reset)} failed segments")
        if reset:
            self.trigger()
        return len(reset)

    def verify_segment(self, segment_id: str) -> bool:
        """Mark an Uploaded segment as Verified after backend acknowledgement."""
        segment = self.store.update_state(segment_id, SegmentUploadState.VERIFIED,
                                          expected_states=[SegmentUploadState.UPLOADED])
        if segment is None:
            return False
        self._emit(segment, UploadStatus.VERIFIED)
        logger.info(f"Segment {segment_id} verified")
        return True

    async def sync_confirmations(self, session_id: str) -> int:
        """Verify every Uploaded segment of a session that the backend reports as received.

        Returns:
            Number of segments that became Verified
        """
        confirmed = set(await asyncio.wait_for(self.backend.fetch_confirmed_segments(session_id),
                                               self.step_timeout_seconds))
        verified = 0
        for segment in self.store.get_segments_by_state(SegmentUploadState.UPLOADED, session_id):
            if segment.segment_id in confirmed and self.verify_segment(segment.segment_id):
                verified += 1
        logger.info(f"Confirmation sync for session {session_id}: {verified} segments verified")
        return verified

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start background queue processing."""
        if self.is_running:
            logger.warning("Upload pipeline already running")
            return
        self.shutdown_event.clear()
        self.worker_thread = threading.Thread(target=self._worker_loop, daemon=True)
        self.worker_thread.name = "UploadPipelineThread"
        self.is_running = True
        self.worker_thread.start()
        self.trigger()
        logger.info("Upload pipeline started")

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop scheduling further passes. An attempt already in flight is allowed to finish.

        Returns:
            True if the worker exited within the timeout
        """
        if not self.is_running:
            return True
        if timeout is None:
            timeout = self.step_timeout_seconds * 3 + 5.0

        logger.info("Stopping upload pipeline...")
        self.shutdown_event.set()
        self.wakeup_event.set()
        stopped = True
        if self.worker_thread and self.worker_thread.is_alive():
            self.worker_thread.join(timeout)
            if self.worker_thread.is_alive():
                logger.warning("Upload pipeline worker did not stop cleanly")
                stopped = False
        self.is_running = False
        logger.info("Upload pipeline stopped")
        return stopped

    def _worker_loop(self) -> None:
        """The main loop of the worker thread. Owns an asyncio loop for the network calls."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            while not self.shutdown_event.is_set():
                try:
                    loop.run_until_complete(self.process_queue())
                except Exception as e:
                    logger.error(f"Unhandled exception in upload pass: {e}", exc_info=True)
                self.wakeup_event.wait(self._next_wait())
                self.wakeup_event.clear()
        finally:
            loop.run_until_complete(self.backend.close())
            loop.close()
            logger.debug("Upload worker exiting and closing its event loop.")

    def _next_wait(self) -> float:
        """Seconds until the next pass: the poll interval, or sooner if a backoff expires first."""
        wait = self.poll_interval_seconds
        if self._not_before:
            earliest = min(self._not_before.values()) - time.monotonic()
            wait = min(wait, earliest)
        return max(wait, 0.0)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Run passes until no segment is outstanding.

        Returns:
            True if the queue emptied, False on timeout or shutdown
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            attempted = await self.process_queue()
            if self.store.count_pending() == 0:
                return True
            if self.shutdown_event.is_set():
                return False
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f"Drain timed out with {self.store.count_pending()} segments outstanding")
                return False
            if attempted == 0:
                await asyncio.sleep(max(self._next_wait(), 0.01))

    # ------------------------------------------------------------------
    # Queue processing
    # ------------------------------------------------------------------

    async def process_queue(self) -> int:
        """Make one pass over the outstanding segments in sequence order.

        Returns:
            Number of upload attempts made
        """
        if not self._queue_lock.acquire(blocking=False):
            logger.debug("Queue pass already running")
            return 0
        try:
            pending = self.store.get_pending_segments()
            if not pending:
                return 0

            logger.info(f"Processing {len(pending)} pending segments")
            attempted = 0
            for segment in pending:
                if self.shutdown_event.is_set():
                    break
                if segment.segment_id in self._in_flight:
                    continue
                if segment.upload_state == SegmentUploadState.UPLOADING:
                    # Left behind by a process that died mid-upload
                    segment = self._recover_stale(segment)
                    if segment is None or segment.upload_state != SegmentUploadState.RECORDED:
                        continue
                if self._not_before.get(segment.segment_id, 0.0) > time.monotonic():
                    continue

                await self._attempt(segment)
                attempted += 1
            return attempted
        finally:
            self._queue_lock.release()

    def _recover_stale(self, segment: Segment) -> Optional[Segment]:
        """Count an interrupted Uploading attempt and make the segment eligible again."""
        logger.warning(f"Segment {segment.segment_id} was left uploading; treating it as an interrupted attempt")
        return self._record_failure(segment, "Upload interrupted before completion",
                                    from_state=SegmentUploadState.UPLOADING, apply_backoff=False)

    async def _attempt(self, segment: Segment) -> None:
        """Run one upload attempt. Never raises: failures are recorded on the segment row."""
        self._in_flight.add(segment.segment_id)
        try:
            if segment.retry_count >= self.max_retry_attempts:
                self._fail(segment, f"Max retry attempts ({self.max_retry_attempts}) exceeded",
                           from_state=SegmentUploadState.RECORDED)
                return

            uploading = self.store.update_state(segment.segment_id, SegmentUploadState.UPLOADING,
                                                expected_states=[SegmentUploadState.RECORDED])
            if uploading is None:
                return
            self._emit(uploading, UploadStatus.UPLOADING, retry_count=uploading.retry_count)

            try:
                await self._upload_single_segment(uploading)
            except IntegrityError as e:
                self._fail(uploading, str(e))
            except SessionNotFoundError as e:
                self._fail(uploading, f"Backend does not know session {uploading.session_id}: {e}")
            except Exception as e:
                logger.error(f"Error uploading segment {uploading.segment_id}: {e!r}")
                self._record_failure(uploading, str(e) or type(e).__name__)
            else:
                uploaded = self.store.update_state(uploading.segment_id, SegmentUploadState.UPLOADED,
                                                   expected_states=[SegmentUploadState.UPLOADING])
                self._not_before.pop(uploading.segment_id, None)
                if uploaded is not None:
                    self._emit(uploaded, UploadStatus.UPLOADED, retry_count=uploaded.retry_count)
        finally:
            self._in_flight.discard(segment.segment_id)

    async def _upload_single_segment(self, segment: Segment) -> None:
        logger.info(f"Uploading segment: {segment.segment_id}, sequence: {segment.sequence_number}")

        # Step 1: reserve a destination
        destination = await self._with_timeout(
            self.backend.reserve_upload_destination(segment.session_id, segment.segment_id,
                                                    segment.sequence_number))

        # Step 2: local integrity check before spending bandwidth
        if not self.store.verify_integrity(segment.segment_id):
            raise IntegrityError(f"Segment {segment.sequence_number} file failed integrity check "
                                 f"({segment.local_path}); this span must be re-recorded")

        # Step 3: transfer the bytes
        data = Path(segment.local_path).read_bytes()
        await self._with_timeout(self.backend.transfer(destination, data))

        # Step 4: confirm with checksum
        await self._with_timeout(
            self.backend.confirm_uploaded(segment.session_id, segment.segment_id,
                                          segment.sequence_number, segment.checksum))

        logger.info(f"Successfully uploaded segment: {segment.segment_id}")

    async def _with_timeout(self, coro):
        return await asyncio.wait_for(coro, self.step_timeout_seconds)

    def _record_failure(self, segment: Segment, error: str,
                        from_state: SegmentUploadState = SegmentUploadState.UPLOADING,
                        apply_backoff: bool = True) -> Optional[Segment]:
        """Count a failed attempt: back to Recorded while attempts remain, otherwise Failed."""
        retry_count = self.store.increment_retry_count(segment.segment_id)
        if retry_count < self.max_retry_attempts:
            updated = self.store.update_state(segment.segment_id, SegmentUploadState.RECORDED,
                                              error_message=error, expected_states=[from_state])
            if apply_backoff:
                delay = self.retry_delay_seconds * (retry_count + 1)
                self._not_before[segment.segment_id] = time.monotonic() + delay
                logger.info(f"Segment {segment.segment_id} will be retried in {delay:.1f}s "
                            f"(attempt {retry_count}/{self.max_retry_attempts} failed)")
            if updated is not None:
                self._emit(updated, UploadStatus.RETRYING, retry_count=retry_count, error=error)
            return updated

        return self._fail(segment, f"Max retries exceeded: {error}", from_state=from_state)

    def _fail(self, segment: Segment, error: str,
              from_state: SegmentUploadState = SegmentUploadState.UPLOADING) -> Optional[Segment]:
        failed = self.store.update_state(segment.segment_id, SegmentUploadState.FAILED,
                                         error_message=error, expected_states=[from_state])
        self._not_before.pop(segment.segment_id, None)
        logger.error(f"Segment {segment.segment_id} (sequence {segment.sequence_number}) failed: {error}")
        if failed is not None:
            self._emit(failed, UploadStatus.FAILED, retry_count=failed.retry_count, error=error)
        return failed

    def _emit(self, segment: Segment, status: UploadStatus,
              retry_count: Optional[int] = None, error: Optional[str] = None) -> None:
        if not self.progress_callback:
            return
        event = UploadProgressEvent(
            segment_id=segment.segment_id,
            sequence_number=segment.sequence_number,
            status=status,
            queue_depth=self.store.count_pending(),
            retry_count=retry_count,
            error=error,
            session_id=segment.session_id,
        )
        try:
            self.progress_callback(event)
        except Exception as e:
            logger.warning(f"Progress listener raised for segment {segment.segment_id}: {e}")
