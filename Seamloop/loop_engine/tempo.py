"""
Tempo Estimator - Lightweight BPM detection for beat-aligned seams.

Envelope follower + onset autocorrelation. Tuned for percussive material;
it declines to answer (returns None) rather than guessing when the onset
signal has no periodicity inside the search band.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np
import librosa
from scipy import signal

from .errors import DecodeError
from .ingest import AudioBuffer, AudioBufferLoader

logger = logging.getLogger(__name__)


@dataclass
class TempoConfig:
    """
    Configuration for tempo estimation.

    Attributes:
        min_bpm: Slowest tempo considered
        max_bpm: Fastest tempo considered
        hop_rate_hz: Envelope frames per second (200 Hz = ~5 ms hops)
    """
    min_bpm: float = 60.0
    max_bpm: float = 200.0
    hop_rate_hz: float = 200.0


class BPMEstimator:
    """
    Estimates tempo from the first channel of a buffer.

    Pipeline:
    1. RMS envelope over fixed hops
    2. First difference, half-wave rectified (onset strength)
    3. Full linear autocorrelation of the onset signal
    4. Strongest positive lag inside the min/max BPM band
    """

    def __init__(self, config: Optional[TempoConfig] = None):
        self.config = config or TempoConfig()

    def hop_length(self, sample_rate: float) -> int:
        return max(1, int(round(sample_rate / self.config.hop_rate_hz)))

    def lag_range(self, sample_rate: float, hop: int):
        """Return (min_lag, max_lag) in envelope frames for the BPM band."""
        min_lag = int(round(sample_rate * 60.0 / (self.config.max_bpm * hop)))
        max_lag = int(round(sample_rate * 60.0 / (self.config.min_bpm * hop)))
        return max(1, min_lag), max_lag

    def onset_envelope(self, samples: np.ndarray, sample_rate: float) -> np.ndarray:
        """
        Compute the rectified envelope derivative.

        Args:
            samples: Mono samples
            sample_rate: Sample rate in Hz

        Returns:
            Onset strength, one value per hop transition
        """
        hop = self.hop_length(sample_rate)
        if len(samples) < 2 * hop:
            return np.zeros(0, dtype=np.float64)

        # One RMS value per complete hop (no centering, no padding)
        envelope = librosa.feature.rms(
            y=np.asarray(samples, dtype=np.float32),
            frame_length=hop, hop_length=hop, center=False
        )[0].astype(np.float64)

        return np.maximum(0.0, np.diff(envelope))

    def estimate(self, buffer: AudioBuffer) -> Optional[float]:
        """
        Estimate tempo of a loaded buffer.

        Args:
            buffer: Audio buffer (channel 0 is analyzed)

        Returns:
            Tempo in BPM, or None if no reliable tempo was found
        """
        return self.estimate_samples(buffer.channel(0), buffer.sample_rate)

    def estimate_samples(self, samples: np.ndarray, sample_rate: float) -> Optional[float]:
        """Estimate tempo from raw mono samples."""
        hop = self.hop_length(sample_rate)
        onset = self.onset_envelope(samples, sample_rate)
        length = len(onset)

        if length == 0:
            logger.debug("Signal too short for tempo estimation")
            return None

        autocorr = signal.correlate(onset, onset, mode='full')[length - 1:]

        min_lag, max_lag = self.lag_range(sample_rate, hop)
        best_lag = 0
        best_val = 0.0
        for lag in range(min_lag, min(max_lag, length)):
            val = autocorr[lag]
            if val > best_val:
                best_val = val
                best_lag = lag

        if best_lag == 0:
            logger.info("No tempo estimate (no positive autocorrelation in range)")
            return None

        bpm = 60.0 * sample_rate / (best_lag * hop)
        logger.info(f"Estimated tempo: {bpm:.1f} BPM (lag={best_lag}, hop={hop})")
        return bpm

    def estimate_file(self, file_path: Union[str, Path],
                      loader: Optional[AudioBufferLoader] = None) -> Optional[float]:
        """
        Estimate tempo of a file. Unreadable files yield None.

        Callers that export the same file repeatedly should keep the result
        and pass it to each job instead of re-estimating.
        """
        loader = loader or AudioBufferLoader()
        try:
            buffer = loader.load(file_path)
        except DecodeError as e:
            logger.warning(f"Tempo estimation skipped: {e}")
            return None
        return self.estimate(buffer)
