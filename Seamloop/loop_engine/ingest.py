"""
Audio Ingest Module - Decode audio files into planar float buffers

Loads a file at its native sample rate and channel count. No resampling,
no channel remixing, no normalization: the loop export must preserve the
source exactly outside the blended seam.
"""

import logging
from pathlib import Path
from typing import Optional, Dict, Any, Union
from dataclasses import dataclass

import numpy as np
import soundfile as sf
import librosa

from .errors import DecodeError, AllocationError
from .formats import ContainerFormat
from .utils import validate_audio_params, format_duration

logger = logging.getLogger(__name__)


@dataclass
class AudioMetadata:
    """Metadata extracted from audio file."""
    sample_rate: float
    channels: int
    frames: int
    duration: float
    format: str
    subtype: Optional[str]
    file_size: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "sample_rate": self.sample_rate,
            "channels": self.channels,
            "frames": self.frames,
            "duration": round(self.duration, 3),
            "format": self.format,
            "subtype": self.subtype,
            "file_size": self.file_size,
            "duration_formatted": format_duration(self.duration)
        }


class AudioBuffer:
    """
    In-memory planar audio buffer.

    Samples are stored as a contiguous float32 array of shape
    (channel_count, frame_count). Each processing job owns its buffer;
    stages hand buffers forward rather than sharing them.
    """

    def __init__(self, samples: np.ndarray, sample_rate: float,
                 metadata: Optional[AudioMetadata] = None):
        """
        Initialize audio buffer.

        Args:
            samples: Planar audio, shape (channels, frames); 1-D input is
                     treated as a single channel
            sample_rate: Sample rate in Hz
            metadata: Optional source file metadata
        """
        if sample_rate is None or sample_rate <= 0:
            raise ValueError(f"Invalid sample rate: {sample_rate}")

        samples = np.asarray(samples)
        if samples.ndim == 1:
            samples = samples[np.newaxis, :]
        elif samples.ndim != 2:
            raise ValueError(f"Invalid audio shape: {samples.shape}")

        if samples.shape[0] < 1:
            raise ValueError("Audio buffer needs at least one channel")

        self.samples = np.ascontiguousarray(samples, dtype=np.float32)
        self.sample_rate = float(sample_rate)
        self.metadata = metadata

    @property
    def channel_count(self) -> int:
        return self.samples.shape[0]

    @property
    def frame_count(self) -> int:
        return self.samples.shape[1]

    @property
    def duration(self) -> float:
        """Get duration in seconds."""
        return self.frame_count / self.sample_rate

    def channel(self, index: int) -> np.ndarray:
        """Return one channel's samples (a view into the buffer)."""
        if not 0 <= index < self.channel_count:
            raise IndexError(f"Channel {index} out of range (0..{self.channel_count - 1})")
        return self.samples[index]

    def __repr__(self) -> str:
        return (f"AudioBuffer(channels={self.channel_count}, frames={self.frame_count}, "
                f"sr={self.sample_rate:g}, duration={format_duration(self.duration)})")

    def copy(self) -> 'AudioBuffer':
        """Create a copy of the audio buffer."""
        return AudioBuffer(
            samples=self.samples.copy(),
            sample_rate=self.sample_rate,
            metadata=self.metadata
        )


class AudioBufferLoader:
    """
    Decodes audio files into AudioBuffer instances.

    libsndfile (through soundfile) handles the uncompressed containers and
    anything else it can read. Import-only lossy formats it cannot open are
    decoded through librosa at their native rate.
    """

    def load(self, file_path: Union[str, Path]) -> AudioBuffer:
        """
        Load an audio file.

        Args:
            file_path: Path to audio file

        Returns:
            AudioBuffer at the file's native sample rate and channel count

        Raises:
            DecodeError: If the file is missing, unreadable, unsupported,
                         or shorter than its header declares
            AllocationError: If the sample buffer cannot be allocated
        """
        file_path = Path(file_path)

        if not file_path.is_file():
            raise DecodeError(f"Audio file not found: {file_path}")

        logger.info(f"Loading audio: {file_path.name}")

        try:
            samples, sample_rate, subtype = self._read_soundfile(file_path)
        except MemoryError as e:
            raise AllocationError(f"Unable to allocate buffer for {file_path.name}") from e
        except (sf.SoundFileError, RuntimeError) as e:
            if ContainerFormat.from_path(file_path) is not ContainerFormat.MP3:
                raise DecodeError(f"Unable to decode {file_path.name}: {e}") from e
            logger.debug(f"  libsndfile cannot read {file_path.suffix}, falling back to librosa")
            samples, sample_rate, subtype = self._read_librosa(file_path)

        channels, frames = samples.shape
        is_valid, error_msg = validate_audio_params(sample_rate, channels, frames)
        if not is_valid:
            raise DecodeError(f"Audio validation failed: {error_msg}")

        metadata = AudioMetadata(
            sample_rate=float(sample_rate),
            channels=channels,
            frames=frames,
            duration=frames / sample_rate,
            format=file_path.suffix.lower(),
            subtype=subtype,
            file_size=file_path.stat().st_size
        )

        logger.info(f"  Loaded: {channels} ch x {frames} frames, {sample_rate} Hz")
        return AudioBuffer(samples=samples, sample_rate=sample_rate, metadata=metadata)

    def _read_soundfile(self, file_path: Path):
        """Read through libsndfile and verify the declared frame count."""
        info = sf.info(str(file_path))
        data, sample_rate = sf.read(str(file_path), dtype='float32', always_2d=True)

        if data.shape[0] < info.frames:
            raise DecodeError(f"Short read from {file_path.name}: "
                              f"got {data.shape[0]} of {info.frames} frames")

        # (frames, channels) -> planar (channels, frames)
        return np.ascontiguousarray(data.T), sample_rate, info.subtype

    def _read_librosa(self, file_path: Path):
        """Decode an import-only format at native rate, keeping all channels."""
        try:
            data, sample_rate = librosa.load(str(file_path), sr=None, mono=False)
        except MemoryError as e:
            raise AllocationError(f"Unable to allocate buffer for {file_path.name}") from e
        except Exception as e:
            raise DecodeError(f"Unable to decode {file_path.name}: {e}") from e

        if data.ndim == 1:
            data = data[np.newaxis, :]
        return np.ascontiguousarray(data, dtype=np.float32), sample_rate, None


def create_test_tone(duration: float = 1.0, frequency: float = 440.0,
                     sample_rate: int = 44100, channels: int = 1,
                     amplitude: float = 0.5) -> AudioBuffer:
    """
    Create a sine test tone for debugging and validation.

    Args:
        duration: Duration in seconds
        frequency: Tone frequency in Hz
        sample_rate: Sample rate in Hz
        channels: Number of identical channels
        amplitude: Peak amplitude

    Returns:
        AudioBuffer with test tone
    """
    n = int(round(sample_rate * duration))
    t = np.arange(n) / sample_rate
    tone = amplitude * np.sin(2 * np.pi * frequency * t)
    return AudioBuffer(samples=np.tile(tone, (channels, 1)), sample_rate=sample_rate)
