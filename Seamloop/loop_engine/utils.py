"""
Utility Functions - Shared helpers for the loop engine

Sample/time conversions, parameter validation, and display helpers.
"""

import logging
from typing import Tuple

logger = logging.getLogger(__name__)


# === Sample / Time Conversions ===

def ms_to_samples(duration_ms: float, sample_rate: float) -> int:
    """
    Convert a duration in milliseconds to a whole number of samples.

    Args:
        duration_ms: Duration in milliseconds
        sample_rate: Sample rate in Hz

    Returns:
        Rounded sample count (may be 0 for very short durations)
    """
    return int(round(sample_rate * duration_ms / 1000.0))


def samples_to_seconds(samples: float, sample_rate: float) -> float:
    """Convert a (possibly fractional) sample position to seconds."""
    return samples / sample_rate


# === Validation ===

def validate_audio_params(sample_rate: float, channels: int, frames: int) -> Tuple[bool, str]:
    """
    Validate decoded audio parameters.

    Args:
        sample_rate: Sample rate in Hz
        channels: Number of audio channels
        frames: Number of frames per channel

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not sample_rate or sample_rate <= 0:
        return False, f"Invalid sample rate: {sample_rate}"
    if channels < 1:
        return False, f"Invalid channel count: {channels}"
    if frames < 0:
        return False, f"Invalid frame count: {frames}"
    return True, "Valid"


# === Display Helpers ===

def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (HH:MM:SS or MM:SS)
    """
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    else:
        return f"{minutes:02d}:{secs:02d}"


def format_file_size(size_bytes: int) -> str:
    """
    Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (KB, MB, GB)
    """
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"
