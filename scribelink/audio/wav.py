"""RIFF/WAVE helpers: locate sample data in a growing file and write segment files.

The capture layer keeps appending to its WAV file while we read it, so the
scanner never trusts a fixed 44-byte header and treats a short read as
"not ready yet" rather than as an error.
"""

import os
import struct
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..errors import WavFormatError
from ..models.audio import AudioFormat

logger = logging.getLogger(__name__)

RIFF_PREAMBLE_SIZE = 12
CHUNK_HEADER_SIZE = 8
PCM_FORMAT_TAG = 1
# Size placeholder used while a recording is still growing
STREAMING_SIZE = 0xFFFFFFFF

PathLike = Union[str, Path]


@dataclass
class DataChunkInfo:
    """Location of the sample-data sub-chunk inside a WAV file."""
    offset: int         # first byte of sample data
    declared_size: int  # size field of the 'data' sub-chunk


def scan_data_chunk(path: PathLike) -> Optional[DataChunkInfo]:
    """Walk the sub-chunks of a WAV file until the 'data' chunk is found.

    Args:
        path: WAV file, possibly still being written

    Returns:
        DataChunkInfo, or None if the header has not been fully flushed yet

    Raises:
        WavFormatError: if the preamble is present but is not RIFF/WAVE
    """
    try:
        with open(path, 'rb') as f:
            file_size = os.fstat(f.fileno()).st_size
            preamble = f.read(RIFF_PREAMBLE_SIZE)
            if len(preamble) < RIFF_PREAMBLE_SIZE:
                return None

            riff, _, wave_tag = struct.unpack('<4sI4s', preamble)
            if riff != b'RIFF' or wave_tag != b'WAVE':
                raise WavFormatError(f"Invalid WAV header in {path}: {riff!r}, {wave_tag!r}")

            position = RIFF_PREAMBLE_SIZE
            while position + CHUNK_HEADER_SIZE <= file_size:
                f.seek(position)
                header = f.read(CHUNK_HEADER_SIZE)
                if len(header) < CHUNK_HEADER_SIZE:
                    return None
                tag, length = struct.unpack('<4sI', header)
                if tag == b'data':
                    return DataChunkInfo(offset=position + CHUNK_HEADER_SIZE, declared_size=length)
                # RIFF pads odd-sized chunks to an even boundary
                position += CHUNK_HEADER_SIZE + length + (length & 1)
    except FileNotFoundError:
        return None

    return None


def find_data_offset(path: PathLike) -> Optional[int]:
    """Byte offset where raw samples begin, or None if not available yet."""
    info = scan_data_chunk(path)
    return info.offset if info else None


def build_wav_header(data_size: int, audio_format: AudioFormat) -> bytes:
    """Build a canonical 44-byte PCM header for data_size bytes of samples."""
    if data_size == STREAMING_SIZE:
        riff_size = STREAMING_SIZE
    else:
        riff_size = 36 + data_size
    return struct.pack(
        '<4sI4s4sIHHIIHH4sI',
        b'RIFF',
        riff_size,
        b'WAVE',
        b'fmt ',
        16,
        PCM_FORMAT_TAG,
        audio_format.channels,
        audio_format.sample_rate,
        audio_format.bytes_per_second,
        audio_format.block_align,
        audio_format.bits_per_sample,
        b'data',
        data_size,
    )


def write_wav_file(path: PathLike, payload: bytes, audio_format: AudioFormat) -> int:
    """Write a self-contained WAV file holding exactly payload.

    The file is written beside its final name and renamed into place, so a
    reader never observes a half-written segment.

    Returns:
        Size of the written file in bytes
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".part")
    data = build_wav_header(len(payload), audio_format) + payload
    with open(tmp_path, 'wb') as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    return len(data)


def read_wav_payload(path: PathLike) -> bytes:
    """Read the sample bytes of a complete WAV file."""
    info = scan_data_chunk(path)
    if info is None:
        raise WavFormatError(f"No data chunk found in {path}")
    with open(path, 'rb') as f:
        f.seek(info.offset)
        return f.read(info.declared_size)
