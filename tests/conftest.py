"""Pytest configuration and fixtures for ScribeLink tests."""

import pytest
import tempfile
import struct
import uuid
import logging
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock, patch
import numpy as np

from scribelink.audio.wav import build_wav_header, write_wav_file, STREAMING_SIZE
from scribelink.errors import BackendError, SessionNotFoundError
from scribelink.models.audio import AudioFormat
from scribelink.models.segment import Segment
from scribelink.storage.segment_store import SegmentStore
from scribelink.upload.base import AbstractUploadBackend


# Configure logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests of a single component")
    config.addinivalue_line("markers", "integration: tests wiring several components together")
    config.addinivalue_line("markers", "hardware: tests that need a real microphone")


@pytest.fixture
def temp_data_dir():
    """Create temporary directory for test data."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield temp_dir


@pytest.fixture
def audio_format():
    return AudioFormat(sample_rate=16000, channels=1, bits_per_sample=16)


@pytest.fixture
def sample_audio_chunk():
    """Generate a sample audio chunk for testing."""
    # Generate 1024 samples of 16-bit audio (sine wave)
    sample_rate = 16000
    duration = 1024 / sample_rate  # ~0.064 seconds
    freq = 440  # A4 note

    t = np.linspace(0, duration, 1024, False)
    wave_data = np.sin(2 * np.pi * freq * t)

    # Convert to 16-bit integers
    audio_data = (wave_data * 32767).astype(np.int16)
    return audio_data.tobytes()


@pytest.fixture
def audio_test_data():
    """Generate various audio test data patterns."""
    def generate_audio(pattern="sine", num_bytes=32000):
        """Generate num_bytes of 16-bit mono audio.

        Args:
            pattern: Type of audio pattern ('sine', 'ramp', 'silence')
            num_bytes: Length of the returned buffer (must be even)

        Returns:
            bytes: Audio data as bytes
        """
        samples = num_bytes // 2
        if pattern == "sine":
            t = np.arange(samples) / 16000
            audio_data = (np.sin(2 * np.pi * 440 * t) * 32767).astype(np.int16)
        elif pattern == "ramp":
            # Distinct values make misplaced byte ranges easy to spot
            audio_data = (np.arange(samples) % 65536 - 32768).astype(np.int16)
        elif pattern == "silence":
            audio_data = np.zeros(samples, dtype=np.int16)
        else:
            raise ValueError(f"Unknown pattern: {pattern}")
        return audio_data.tobytes()

    return generate_audio


@pytest.fixture
def mock_pyaudio():
    """Mock PyAudio for testing without actual audio hardware."""
    with patch('pyaudio.PyAudio') as mock_pyaudio_class:
        mock_pyaudio_instance = Mock()
        mock_stream = Mock()

        # Configure mock stream
        mock_stream.read.return_value = b'\x00' * 2048  # Silent audio
        mock_stream.stop_stream.return_value = None
        mock_stream.close.return_value = None

        # Configure mock PyAudio instance
        mock_pyaudio_instance.open.return_value = mock_stream
        mock_pyaudio_instance.terminate.return_value = None
        mock_pyaudio_instance.get_sample_size.return_value = 2
        mock_pyaudio_instance.get_default_input_device_info.return_value = {"name": "Mock Microphone"}

        # Configure mock PyAudio class
        mock_pyaudio_class.return_value = mock_pyaudio_instance

        yield {
            'class': mock_pyaudio_class,
            'instance': mock_pyaudio_instance,
            'stream': mock_stream
        }


def write_growing_wav(path: Path, audio_format: AudioFormat, payload: bytes = b'',
                      extra_chunks: bytes = b'') -> None:
    """Write a WAV file the way a capture layer does mid-recording.

    Sizes are streaming placeholders; extra_chunks are inserted between the
    fmt and data chunks.
    """
    header = build_wav_header(STREAMING_SIZE, audio_format)
    # Canonical header: RIFF(12) + fmt(24) + data tag/size(8)
    with open(path, 'wb') as f:
        f.write(header[:36])
        f.write(extra_chunks)
        f.write(header[36:])
        f.write(payload)


def append_audio(path: Path, payload: bytes) -> None:
    with open(path, 'ab') as f:
        f.write(payload)


def finalize_wav(path: Path, data_offset: int) -> None:
    """Patch the placeholder sizes with the real ones."""
    size = path.stat().st_size
    with open(path, 'r+b') as f:
        f.seek(4)
        f.write(struct.pack('<I', size - 8))
        f.seek(data_offset - 4)
        f.write(struct.pack('<I', size - data_offset))


class WavTools:
    """Test access to the growing-file helpers."""
    write_growing = staticmethod(write_growing_wav)
    append = staticmethod(append_audio)
    finalize = staticmethod(finalize_wav)


@pytest.fixture
def wav_tools():
    return WavTools()


@pytest.fixture
def segment_store(temp_data_dir):
    return SegmentStore(str(Path(temp_data_dir) / "store"))


@pytest.fixture
def make_segment(temp_data_dir, audio_format):
    """Factory writing a real segment file and returning its (unsaved) Segment."""
    chunks_dir = Path(temp_data_dir) / "chunks"

    def _make(session_id: str = "session-1", sequence_number: int = 0, payload: bytes = None) -> Segment:
        if payload is None:
            payload = bytes([sequence_number % 256]) * 3200
        path = chunks_dir / session_id / f"chunk_{sequence_number}.wav"
        size = write_wav_file(path, payload, audio_format)
        return Segment(
            segment_id=str(uuid.uuid4()),
            session_id=session_id,
            sequence_number=sequence_number,
            local_path=str(path),
            size_bytes=size,
            duration_seconds=audio_format.duration_for_bytes(len(payload)),
        )

    return _make


class FakeUploadBackend(AbstractUploadBackend):
    """In-memory backend implementing the reserve / transfer / confirm handshake."""

    def __init__(self):
        self.sessions: Dict[str, Dict] = {}
        self.objects: Dict[str, bytes] = {}
        self.confirmed: Dict[str, Dict] = {}
        self.completed: Dict[str, int] = {}
        self.calls: List[tuple] = []
        self.transfer_failures = 0
        self.create_error: Optional[Exception] = None
        self.complete_error: Optional[Exception] = None

    def register_session(self, session_id: str) -> None:
        self.sessions[session_id] = {"subject_id": None, "owner_id": None}

    async def create_session(self, subject_id: str, owner_id: str) -> str:
        if self.create_error:
            raise self.create_error
        session_id = f"session-{len(self.sessions) + 1}-{uuid.uuid4().hex[:8]}"
        self.sessions[session_id] = {"subject_id": subject_id, "owner_id": owner_id}
        return session_id

    async def reserve_upload_destination(self, session_id: str, segment_id: str, sequence_number: int) -> str:
        self.calls.append(("reserve", segment_id, sequence_number))
        if session_id not in self.sessions:
            raise SessionNotFoundError(f"Session not found: {session_id}", status=404)
        return f"mem://{session_id}/{sequence_number}/{segment_id}"

    async def transfer(self, destination: str, data: bytes) -> None:
        self.calls.append(("transfer", destination))
        if self.transfer_failures > 0:
            self.transfer_failures -= 1
            raise BackendError("Segment transfer failed: connection reset")
        self.objects[destination] = data

    async def confirm_uploaded(self, session_id: str, segment_id: str, sequence_number: int,
                               checksum: str) -> None:
        self.calls.append(("confirm", segment_id, sequence_number))
        self.confirmed[segment_id] = {
            "session_id": session_id,
            "sequence_number": sequence_number,
            "checksum": checksum,
        }

    async def complete_session(self, session_id: str, total_segments: int) -> None:
        if self.complete_error:
            raise self.complete_error
        self.completed[session_id] = total_segments

    async def fetch_confirmed_segments(self, session_id: str) -> List[str]:
        return [segment_id for segment_id, info in self.confirmed.items() if info["session_id"] == session_id]

    def transfer_count(self) -> int:
        return sum(1 for call in self.calls if call[0] == "transfer")


@pytest.fixture
def fake_backend():
    backend = FakeUploadBackend()
    backend.register_session("session-1")
    return backend


class FakeCapture:
    """Capture collaborator writing a growing WAV file on demand instead of recording."""

    def __init__(self, audio_format: AudioFormat, fail_with: Optional[Exception] = None):
        self.audio_format = audio_format
        self.fail_with = fail_with
        self.path: Optional[Path] = None
        self.is_capturing = False
        self.is_paused = False
        self.stopped_paths: List[str] = []
        self.interruption_callback = None

    def set_interruption_callback(self, callback) -> None:
        self.interruption_callback = callback

    def interrupt(self, error: Exception) -> None:
        """Simulate the device dying mid-recording; the file stays open until stop_capture."""
        if self.interruption_callback:
            self.interruption_callback(str(self.path), error)

    def start_capture(self, path: str, sample_rate: int) -> None:
        if self.fail_with:
            raise self.fail_with
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        write_growing_wav(self.path, self.audio_format)
        self.is_capturing = True
        self.is_paused = False

    def feed(self, payload: bytes) -> None:
        """Simulate the platform appending recorded audio."""
        if not self.is_paused:
            append_audio(self.path, payload)

    def pause_capture(self) -> None:
        self.is_paused = True

    def resume_capture(self) -> None:
        self.is_paused = False

    def stop_capture(self) -> Optional[str]:
        if not self.is_capturing:
            return None
        finalize_wav(self.path, 44)
        self.is_capturing = False
        self.stopped_paths.append(str(self.path))
        return str(self.path)


@pytest.fixture
def fake_capture(audio_format):
    return FakeCapture(audio_format)


@pytest.fixture
def config_file(temp_data_dir):
    """Write a small configuration with fast timings for orchestrator tests."""
    config_path = Path(temp_data_dir) / "scribelink.yaml"
    config_path.write_text(
        "audio:\n"
        "  sample_rate: 16000\n"
        "  channels: 1\n"
        "  bits_per_sample: 16\n"
        "segmenter:\n"
        "  segment_duration_seconds: 0.1\n"
        "  poll_interval_seconds: 0.05\n"
        "upload:\n"
        "  max_retry_attempts: 3\n"
        "  retry_delay_seconds: 0.0\n"
        "  poll_interval_seconds: 0.05\n"
        "  request_timeout_seconds: 5.0\n"
        "  stuck_threshold_seconds: 1.0\n"
        "backend:\n"
        "  base_url: http://localhost:3000/api\n"
        "storage:\n"
        "  data_directory: data\n"
        "logging:\n"
        "  level: DEBUG\n"
        "  file_path: data/logs/test.log\n"
        "  console_output: false\n"
    )
    return str(config_path)
