"""
Crossfade Compositor - Blend the buffer tail into its head.

For each channel independently, the fade region at the (offset) tail is
replaced by tail * fade_out + head * fade_in. Every other sample is copied
unchanged.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from .errors import AllocationError
from .ingest import AudioBuffer

logger = logging.getLogger(__name__)


class FadeLaw(Enum):
    """Gain curves used across the fade region."""
    EQUAL_POWER = "equal_power"  # cos/sin, fade_out^2 + fade_in^2 == 1
    LINEAR = "linear"            # 1 - t / t, dips in perceived loudness mid-fade


def fade_curves(length: int, law: FadeLaw = FadeLaw.EQUAL_POWER) -> Tuple[np.ndarray, np.ndarray]:
    """
    Build (fade_out, fade_in) gain curves.

    Args:
        length: Number of samples in the fade (t runs 0..1 inclusive)
        law: Fade law

    Returns:
        Tuple of float64 arrays, each of `length` samples
    """
    if length < 2:
        return np.ones(length), np.zeros(length)

    t = np.arange(length, dtype=np.float64) / (length - 1)

    if law == FadeLaw.EQUAL_POWER:
        return np.cos(t * np.pi / 2), np.sin(t * np.pi / 2)
    return 1.0 - t, t


@dataclass
class CrossfadeConfig:
    """
    Configuration for the compositor.

    Attributes:
        fade_law: Gain curve shape
    """
    fade_law: FadeLaw = FadeLaw.EQUAL_POWER


class CrossfadeCompositor:
    """
    Applies the loop crossfade to every channel of a buffer.
    """

    def __init__(self, config: Optional[CrossfadeConfig] = None):
        self.config = config or CrossfadeConfig()

    @staticmethod
    def fade_length(fade_samples: int, total: int) -> int:
        """Effective fade length; never more than half the buffer."""
        return max(0, min(int(fade_samples), total // 2))

    def blend_channel(self, samples: np.ndarray, offset_frames: int,
                      fade_samples: int) -> np.ndarray:
        """
        Blend one channel.

        Args:
            samples: Channel samples (not modified)
            offset_frames: Tail offset from the seam analyzer (<= 0)
            fade_samples: Fade length in samples

        Returns:
            New array with the tail fade region replaced by the blend
        """
        total = len(samples)
        output = np.array(samples, copy=True)
        fade = self.fade_length(fade_samples, total)

        if fade < 2:
            return output

        end_start = total - fade + offset_frames
        if end_start < 0 or end_start + fade > total:
            raise ValueError(f"Offset {offset_frames} puts the fade outside the buffer "
                             f"(total={total}, fade={fade})")

        fade_out, fade_in = fade_curves(fade, self.config.fade_law)
        tail = samples[end_start:end_start + fade].astype(np.float64)
        head = samples[:fade].astype(np.float64)
        output[end_start:end_start + fade] = tail * fade_out + head * fade_in
        return output

    def composite(self, buffer: AudioBuffer, offset_frames: int,
                  fade_samples: int) -> AudioBuffer:
        """
        Blend every channel of a buffer.

        Returns:
            New AudioBuffer with the same rate, channel count, and frame count
        """
        try:
            blended = np.empty_like(buffer.samples)
        except MemoryError as e:
            raise AllocationError("Unable to allocate crossfade output buffer") from e

        for ch in range(buffer.channel_count):
            blended[ch] = self.blend_channel(buffer.channel(ch), offset_frames, fade_samples)

        logger.debug(f"Crossfaded {buffer.channel_count} channel(s): "
                     f"fade={self.fade_length(fade_samples, buffer.frame_count)}, "
                     f"offset={offset_frames}, law={self.config.fade_law.value}")
        return AudioBuffer(samples=blended, sample_rate=buffer.sample_rate,
                           metadata=buffer.metadata)
