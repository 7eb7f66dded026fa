"""
Buffer Rotator - Move the loop seam from the buffer boundary to its midpoint.
"""

import logging
from typing import Optional

import numpy as np

from .ingest import AudioBuffer

logger = logging.getLogger(__name__)


def rotate(samples: np.ndarray, mid: int) -> np.ndarray:
    """
    Return concat(samples[mid:], samples[:mid]).

    Rotating by `mid` and then by `len(samples) - mid` restores the input.
    """
    total = samples.shape[-1]
    if not 0 <= mid <= total:
        raise ValueError(f"Rotation point {mid} outside 0..{total}")
    return np.concatenate((samples[..., mid:], samples[..., :mid]), axis=-1)


class BufferRotator:
    """Centers the seam of a blended buffer, channel by channel."""

    @staticmethod
    def midpoint(frame_count: int) -> int:
        return frame_count // 2

    def rotate_channel(self, samples: np.ndarray, mid: Optional[int] = None) -> np.ndarray:
        if mid is None:
            mid = self.midpoint(len(samples))
        return rotate(samples, mid)

    def center_seam(self, buffer: AudioBuffer) -> AudioBuffer:
        """Rotate every channel so the former file boundary sits at the midpoint."""
        mid = self.midpoint(buffer.frame_count)
        rotated = rotate(buffer.samples, mid)
        logger.debug(f"Rotated {buffer.channel_count} channel(s) by {mid} frames")
        return AudioBuffer(samples=rotated, sample_rate=buffer.sample_rate,
                           metadata=buffer.metadata)
