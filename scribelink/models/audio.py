"""Audio-related data models."""

from dataclasses import dataclass


@dataclass(frozen=True)
class AudioFormat:
    """PCM layout of a recording."""
    sample_rate: int = 16000
    channels: int = 1
    bits_per_sample: int = 16

    @property
    def bytes_per_sample(self) -> int:
        return self.bits_per_sample // 8

    @property
    def block_align(self) -> int:
        """Bytes per frame (one sample for every channel)."""
        return self.channels * self.bytes_per_sample

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.block_align

    def bytes_for_duration(self, duration_seconds: float) -> int:
        """Whole-frame byte count covering duration_seconds of audio."""
        frames = int(self.sample_rate * duration_seconds)
        return frames * self.block_align

    def duration_for_bytes(self, byte_count: int) -> float:
        return byte_count / self.bytes_per_second


@dataclass
class AudioStats:
    """Audio capture statistics."""
    is_recording: bool
    is_paused: bool
    duration_seconds: float
    sample_rate: int
    chunk_size: int
    total_chunks: int
    bytes_written: int
    peak_level: float = 0.0
