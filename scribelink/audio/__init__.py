"""Audio capture, WAV handling and live segmentation."""

from .capture import AbstractCapture, AudioCapture, check_microphone_available
from .segmenter import LiveSegmenter
from .audio_pub import SegmentPublisher, LevelPublisher
from .wav import find_data_offset, scan_data_chunk

__all__ = [
    'AbstractCapture',
    'AudioCapture',
    'check_microphone_available',
    'LiveSegmenter',
    'SegmentPublisher',
    'LevelPublisher',
    'find_data_offset',
    'scan_data_chunk',
]
