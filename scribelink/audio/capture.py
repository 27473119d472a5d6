"""Audio capture module: continuous recording into a growing WAV file."""

import os
import struct
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from threading import Thread, Event
from typing import Optional, Callable, BinaryIO

import numpy as np
import pyaudio

from .wav import build_wav_header, STREAMING_SIZE
from ..errors import CaptureError
from ..models.audio import AudioFormat, AudioStats

logger = logging.getLogger(__name__)

# Offsets of the size fields in the canonical 44-byte header
RIFF_SIZE_OFFSET = 4
DATA_SIZE_OFFSET = 40
HEADER_SIZE = 44


class AbstractCapture(ABC):
    """Platform capture collaborator: records continuously to a named file."""

    interruption_callback: Optional[Callable[[str, Exception], None]] = None

    def set_interruption_callback(self, callback: Optional[Callable[[str, Exception], None]]) -> None:
        """Register callback(path, error) for recordings that die without stop_capture.

        It runs on the capture thread, so it must not call stop_capture itself.
        """
        self.interruption_callback = callback

    def _notify_interrupted(self, path: str, error: Exception) -> None:
        if self.interruption_callback:
            self.interruption_callback(path, error)

    @abstractmethod
    def start_capture(self, path: str, sample_rate: int) -> None:
        """Start recording to path. Raises CaptureError if the input cannot be opened."""
        pass

    @abstractmethod
    def pause_capture(self) -> None:
        pass

    @abstractmethod
    def resume_capture(self) -> None:
        pass

    @abstractmethod
    def stop_capture(self) -> Optional[str]:
        """Stop recording and finalize the file.

        Returns:
            Path of the finished recording, or None if nothing was recording
        """
        pass

    @property
    @abstractmethod
    def is_capturing(self) -> bool:
        pass

    @property
    @abstractmethod
    def is_paused(self) -> bool:
        pass


class AudioCapture(AbstractCapture):
    """PyAudio capture that appends raw PCM to a WAV file while recording.

    The header is written and flushed before any samples, with streaming
    placeholder sizes, so a reader polling the file can locate the data
    chunk immediately. The real sizes are patched in on stop.
    """

    def __init__(self,
                 audio_format: Optional[AudioFormat] = None,
                 chunk_size: int = 1024,
                 level_callback: Optional[Callable[[float], None]] = None,
                 interruption_callback: Optional[Callable[[str, Exception], None]] = None):
        """Initialize audio capture.

        Args:
            audio_format: PCM layout to record; only 16-bit samples are supported
            chunk_size: Frames per stream read
            level_callback: Receives the RMS level (0.0 - 1.0) of every read
            interruption_callback: Receives (path, error) when the device fails mid-recording
        """
        self.audio_format = audio_format or AudioFormat()
        if self.audio_format.bits_per_sample != 16:
            raise ValueError("AudioCapture records 16-bit PCM only")
        self.chunk_size = chunk_size
        self.level_callback = level_callback
        self.interruption_callback = interruption_callback

        # Recording thread management
        self.recording_thread: Optional[Thread] = None
        self.stop_event = Event()
        self.pause_event = Event()
        self._is_capturing = False

        # Current output
        self.output_path: Optional[Path] = None
        self._file: Optional[BinaryIO] = None

        # Statistics tracking
        self.start_time: Optional[datetime] = None
        self.total_chunks = 0
        self.bytes_written = 0
        self.peak_level = 0.0

        # PyAudio instance
        self.pyaudio_instance: Optional[pyaudio.PyAudio] = None
        self.stream = None

    @property
    def is_capturing(self) -> bool:
        return self._is_capturing

    @property
    def is_paused(self) -> bool:
        return self.pause_event.is_set()

    def start_capture(self, path: str, sample_rate: int) -> None:
        """Open the input device and start appending samples to path."""
        if self._is_capturing:
            raise CaptureError("Capture already in progress")

        self.audio_format = replace(self.audio_format, sample_rate=sample_rate)
        self.output_path = Path(path)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

        # Open the device first so a permission or device failure leaves no file behind
        self._open_audio_stream()

        try:
            self._file = open(self.output_path, 'wb')
            self._file.write(build_wav_header(STREAMING_SIZE, self.audio_format))
            self._file.flush()
        except OSError as e:
            self._close_audio_stream()
            raise CaptureError(f"Cannot create recording file {path}: {e}") from e

        self.stop_event.clear()
        self.pause_event.clear()
        self.start_time = datetime.now()
        self.total_chunks = 0
        self.bytes_written = 0
        self.peak_level = 0.0

        self.recording_thread = Thread(target=self._record_continuously, daemon=True)
        self.recording_thread.name = "AudioCaptureThread"
        self._is_capturing = True
        self.recording_thread.start()
        logger.info(f"Started audio capture to {path} at {sample_rate}Hz")

    def pause_capture(self) -> None:
        if not self._is_capturing:
            logger.warning("No capture in progress")
            return
        self.pause_event.set()
        logger.info("Audio capture paused")

    def resume_capture(self) -> None:
        if not self._is_capturing:
            logger.warning("No capture in progress")
            return
        self.pause_event.clear()
        logger.info("Audio capture resumed")

    def stop_capture(self) -> Optional[str]:
        """Stop recording, patch the header sizes and close the file."""
        if not self._is_capturing:
            logger.warning("No capture in progress")
            return None

        logger.info("Stopping audio capture")
        self.stop_event.set()
        if self.recording_thread and self.recording_thread.is_alive():
            self.recording_thread.join(timeout=2.0)
            if self.recording_thread.is_alive():
                logger.warning("Recording thread did not stop cleanly")

        self._close_audio_stream()
        self._finalize_file()
        self._is_capturing = False

        logger.info(f"Capture stopped. Total chunks: {self.total_chunks}, bytes: {self.bytes_written}")
        return str(self.output_path)

    def _open_audio_stream(self) -> None:
        try:
            self.pyaudio_instance = pyaudio.PyAudio()
            self.stream = self.pyaudio_instance.open(
                format=pyaudio.paInt16,
                channels=self.audio_format.channels,
                rate=self.audio_format.sample_rate,
                input=True,
                frames_per_buffer=self.chunk_size,
                stream_callback=None
            )
        except (OSError, IOError) as e:
            self._close_audio_stream()
            raise CaptureError(f"Cannot open microphone: {e}") from e
        logger.info(f"Audio stream opened: {self.audio_format.sample_rate}Hz, "
                    f"{self.chunk_size} samples/chunk")

    def _close_audio_stream(self) -> None:
        if self.stream is not None:
            try:
                self.stream.stop_stream()
                self.stream.close()
            except OSError as e:
                logger.warning(f"Error closing audio stream: {e}")
            self.stream = None
        if self.pyaudio_instance is not None:
            self.pyaudio_instance.terminate()
            self.pyaudio_instance = None

    def _record_continuously(self) -> None:
        """Internal method: continuous recording loop in background thread."""
        try:
            while not self.stop_event.is_set():
                audio_chunk = self.stream.read(self.chunk_size, exception_on_overflow=False)
                self.total_chunks += 1
                if self.pause_event.is_set():
                    continue
                self._file.write(audio_chunk)
                # Flush every read so the segmenter sees the bytes
                self._file.flush()
                self.bytes_written += len(audio_chunk)
                self._publish_level(audio_chunk)
        except (OSError, IOError) as e:
            logger.error(f"Audio capture failed: {e}", exc_info=True)
            self.stop_event.set()
            self._notify_interrupted(str(self.output_path), e)

    def _publish_level(self, audio_chunk: bytes) -> None:
        level = calculate_level(audio_chunk)
        self.peak_level = max(self.peak_level, level)
        if self.level_callback:
            self.level_callback(level)

    def _finalize_file(self) -> None:
        """Replace the streaming placeholders with the real sizes."""
        if self._file is None:
            return
        try:
            self._file.flush()
            file_size = os.fstat(self._file.fileno()).st_size
            data_size = max(file_size - HEADER_SIZE, 0)
            self._file.seek(RIFF_SIZE_OFFSET)
            self._file.write(struct.pack('<I', file_size - 8))
            self._file.seek(DATA_SIZE_OFFSET)
            self._file.write(struct.pack('<I', data_size))
            self._file.flush()
            os.fsync(self._file.fileno())
        finally:
            self._file.close()
            self._file = None

    def get_recording_stats(self) -> AudioStats:
        """Get current recording statistics."""
        duration = 0.0
        if self.start_time:
            duration = (datetime.now() - self.start_time).total_seconds()

        return AudioStats(
            is_recording=self._is_capturing,
            is_paused=self.is_paused,
            duration_seconds=duration,
            sample_rate=self.audio_format.sample_rate,
            chunk_size=self.chunk_size,
            total_chunks=self.total_chunks,
            bytes_written=self.bytes_written,
            peak_level=self.peak_level,
        )


def calculate_level(audio_chunk: bytes) -> float:
    """RMS level of a 16-bit PCM buffer, scaled to 0.0 - 1.0."""
    samples = np.frombuffer(audio_chunk, dtype=np.int16)
    if samples.size == 0:
        return 0.0
    rms = np.sqrt(np.mean(samples.astype(np.float64) ** 2))
    return float(min(rms / 32768.0, 1.0))


def check_microphone_available() -> bool:
    """Check whether a default input device can be found."""
    pa = pyaudio.PyAudio()
    try:
        info = pa.get_default_input_device_info()
        logger.info(f"Default input device: {info.get('name')}")
        return True
    except (OSError, IOError) as e:
        logger.warning(f"No microphone available: {e}")
        return False
    finally:
        pa.terminate()
