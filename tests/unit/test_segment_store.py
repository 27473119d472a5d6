"""Unit tests for SegmentStore class."""

import pytest
import json
import threading
from pathlib import Path
from datetime import datetime, timedelta

from scribelink.models.segment import SegmentUploadState
from scribelink.storage.segment_store import SegmentStore, calculate_checksum


@pytest.mark.unit
class TestSegmentStore:
    """Test cases for the durable segment table."""

    def test_save_computes_checksum(self, segment_store, make_segment):
        segment = make_segment()

        stored = segment_store.save_segment(segment)

        assert stored.checksum == calculate_checksum(segment.local_path)
        assert segment_store.get_segment(segment.segment_id).checksum == stored.checksum

    def test_rows_survive_reopen(self, segment_store, make_segment):
        """A new store instance on the same directory sees every row and state."""
        first = segment_store.save_segment(make_segment(sequence_number=0))
        second = segment_store.save_segment(make_segment(sequence_number=1))
        segment_store.update_state(first.segment_id, SegmentUploadState.UPLOADED)
        segment_store.increment_retry_count(second.segment_id)

        reopened = SegmentStore(str(segment_store.data_dir))

        assert reopened.get_segment(first.segment_id).upload_state == SegmentUploadState.UPLOADED
        assert reopened.get_segment(second.segment_id).retry_count == 1
        assert reopened.get_segment(second.segment_id).created_at == second.created_at

    def test_store_file_format(self, segment_store, make_segment):
        segment_store.save_segment(make_segment())

        data = json.loads(segment_store.store_file.read_text())

        assert data["version"] == 1
        assert data["segments"][0]["upload_state"] == "recorded"

    def test_returned_copies_are_detached(self, segment_store, make_segment):
        stored = segment_store.save_segment(make_segment())
        stored.upload_state = SegmentUploadState.FAILED

        assert segment_store.get_segment(stored.segment_id).upload_state == SegmentUploadState.RECORDED

    def test_update_state_compare_and_set(self, segment_store, make_segment):
        """Only one caller can move a row out of the expected state."""
        stored = segment_store.save_segment(make_segment())

        won = segment_store.update_state(stored.segment_id, SegmentUploadState.UPLOADING,
                                         expected_states=[SegmentUploadState.RECORDED])
        lost = segment_store.update_state(stored.segment_id, SegmentUploadState.UPLOADING,
                                          expected_states=[SegmentUploadState.RECORDED])

        assert won is not None and won.upload_state == SegmentUploadState.UPLOADING
        assert lost is None

    def test_concurrent_claims_single_winner(self, segment_store, make_segment):
        stored = segment_store.save_segment(make_segment())
        results = []

        def claim():
            results.append(segment_store.update_state(stored.segment_id, SegmentUploadState.UPLOADING,
                                                      expected_states=[SegmentUploadState.RECORDED]))

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r is not None) == 1

    def test_update_unknown_segment(self, segment_store):
        assert segment_store.update_state("missing", SegmentUploadState.UPLOADED) is None

    def test_error_message_kept_unless_given(self, segment_store, make_segment):
        stored = segment_store.save_segment(make_segment())
        segment_store.update_state(stored.segment_id, SegmentUploadState.RECORDED, error_message="timeout")
        segment_store.update_state(stored.segment_id, SegmentUploadState.UPLOADING)

        assert segment_store.get_segment(stored.segment_id).error_message == "timeout"

    def test_increment_retry_count(self, segment_store, make_segment):
        stored = segment_store.save_segment(make_segment())

        assert segment_store.increment_retry_count(stored.segment_id) == 1
        assert segment_store.increment_retry_count(stored.segment_id) == 2
        with pytest.raises(KeyError):
            segment_store.increment_retry_count("missing")

    def test_pending_segments_in_sequence_order(self, segment_store, make_segment):
        for sequence in (2, 0, 1):
            segment_store.save_segment(make_segment(sequence_number=sequence))
        segment_store.save_segment(make_segment(session_id="session-0", sequence_number=5))

        pending = segment_store.get_pending_segments("session-1")

        assert [s.sequence_number for s in pending] == [0, 1, 2]
        assert segment_store.count_pending() == 4
        assert segment_store.count_pending("session-1") == 3
        assert segment_store.get_pending_segments()[0].session_id == "session-0"

    def test_uploaded_is_not_pending(self, segment_store, make_segment):
        stored = segment_store.save_segment(make_segment())
        segment_store.update_state(stored.segment_id, SegmentUploadState.UPLOADED)

        assert segment_store.count_pending() == 0
        assert segment_store.get_segments_by_state(SegmentUploadState.UPLOADED)[0].segment_id == stored.segment_id

    def test_next_sequence_number(self, segment_store, make_segment):
        assert segment_store.max_sequence_number("session-1") is None
        assert segment_store.next_sequence_number("session-1") == 0

        segment_store.save_segment(make_segment(sequence_number=0))
        segment_store.save_segment(make_segment(sequence_number=4))

        assert segment_store.max_sequence_number("session-1") == 4
        assert segment_store.next_sequence_number("session-1") == 5

    def test_carved_bytes_per_recording_file(self, segment_store, make_segment):
        assert segment_store.carved_bytes("session-1", "recording_0.wav") == 0

        for sequence, (source, end) in enumerate([("recording_0.wav", 3200), ("recording_0.wav", 6400),
                                                  ("recording_1.wav", 3200)]):
            segment_store.save_segment(make_segment(sequence_number=sequence).copy_with(
                source_path=source, source_end=end))

        assert segment_store.carved_bytes("session-1", "recording_0.wav") == 6400
        assert segment_store.carved_bytes("session-1", "recording_1.wav") == 3200
        assert segment_store.carved_bytes("session-2", "recording_0.wav") == 0

    def test_reset_for_retry_only_from_failed(self, segment_store, make_segment):
        stored = segment_store.save_segment(make_segment())
        assert segment_store.reset_for_retry(stored.segment_id) is None

        segment_store.increment_retry_count(stored.segment_id)
        segment_store.update_state(stored.segment_id, SegmentUploadState.FAILED, error_message="boom")
        reset = segment_store.reset_for_retry(stored.segment_id)

        assert reset.upload_state == SegmentUploadState.RECORDED
        assert reset.retry_count == 0
        assert reset.error_message is None

    def test_retry_all_failed_per_session(self, segment_store, make_segment):
        a = segment_store.save_segment(make_segment(sequence_number=0))
        b = segment_store.save_segment(make_segment(session_id="session-2", sequence_number=0))
        for segment in (a, b):
            segment_store.update_state(segment.segment_id, SegmentUploadState.FAILED)

        reset = segment_store.retry_all_failed("session-1")

        assert [s.segment_id for s in reset] == [a.segment_id]
        assert segment_store.get_segment(b.segment_id).upload_state == SegmentUploadState.FAILED

    def test_verify_integrity(self, segment_store, make_segment):
        stored = segment_store.save_segment(make_segment())
        assert segment_store.verify_integrity(stored.segment_id) is True

        with open(stored.local_path, 'r+b') as f:
            f.seek(60)
            f.write(b'\xff\xff')
        assert segment_store.verify_integrity(stored.segment_id) is False

        Path(stored.local_path).unlink()
        assert segment_store.verify_integrity(stored.segment_id) is False

    def test_delete_refuses_unverified(self, segment_store, make_segment):
        """An unverified file may be the only copy of that audio."""
        stored = segment_store.save_segment(make_segment())

        with pytest.raises(ValueError):
            segment_store.delete_segment(stored.segment_id)
        assert Path(stored.local_path).exists()

        assert segment_store.delete_segment(stored.segment_id, discard=True) is True
        assert not Path(stored.local_path).exists()
        assert segment_store.get_segment(stored.segment_id) is None

    def test_delete_verified(self, segment_store, make_segment):
        stored = segment_store.save_segment(make_segment())
        segment_store.update_state(stored.segment_id, SegmentUploadState.VERIFIED)

        assert segment_store.delete_segment(stored.segment_id) is True
        assert segment_store.delete_segment(stored.segment_id) is False

    def test_cleanup_old_verified(self, segment_store, make_segment):
        old = make_segment(sequence_number=0)
        old.created_at = datetime.now() - timedelta(days=10)
        old.upload_state = SegmentUploadState.VERIFIED
        recent = make_segment(sequence_number=1)
        recent.upload_state = SegmentUploadState.VERIFIED
        old_unverified = make_segment(sequence_number=2)
        old_unverified.created_at = datetime.now() - timedelta(days=10)
        for segment in (old, recent, old_unverified):
            segment_store.save_segment(segment)

        removed = segment_store.cleanup_old_verified(days_old=7)

        assert removed == 1
        assert segment_store.get_segment(old.segment_id) is None
        assert segment_store.get_segment(recent.segment_id) is not None
        assert segment_store.get_segment(old_unverified.segment_id) is not None

    def test_discard_session(self, segment_store, make_segment):
        for sequence in range(3):
            segment_store.save_segment(make_segment(sequence_number=sequence))
        segment_store.save_segment(make_segment(session_id="session-2"))

        assert segment_store.discard_session("session-1") == 3
        assert segment_store.get_segments_by_session("session-1") == []
        assert len(segment_store.get_segments_by_session("session-2")) == 1

    def test_storage_stats(self, segment_store, make_segment):
        a = segment_store.save_segment(make_segment(sequence_number=0))
        segment_store.save_segment(make_segment(sequence_number=1))
        segment_store.update_state(a.segment_id, SegmentUploadState.UPLOADED)

        stats = segment_store.get_storage_stats("session-1")

        assert stats["total_segments"] == 2
        assert stats["recorded"] == 1
        assert stats["uploaded"] == 1
        assert stats["failed"] == 0
        assert stats["total_size_bytes"] == 2 * (3200 + 44)
