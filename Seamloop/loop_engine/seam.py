"""
Loop Seam Analyzer - Find where to splice a buffer's tail into its head.

The tail window [total - fade + offset, total + offset) is blended over the
head window [0, fade). This module picks `offset` (and, for tempo-driven
modes, re-quantizes `fade` to whole beats) so the splice is as inaudible as
possible.

Strategies, selected by CrossfadeMode:
- MANUAL: no search, offset 0
- BEAT_ALIGNED: waveform matching (sum of squared differences), candidates
  stepped by one beat when a tempo is known
- SPECTRAL: timbral matching of Hann-windowed magnitude spectra, every
  sample offset (normalized correlation is available as an alternative)
- RHYTHMIC_BPM: beat quantization of the fade only, offset 0
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import numpy as np
from scipy import fft as sp_fft
from scipy import signal

from .ingest import AudioBuffer
from .utils import ms_to_samples, samples_to_seconds

logger = logging.getLogger(__name__)

# Above this many multiply-adds the squared-difference search switches from
# exact sliding windows to FFT correlation.
_DIRECT_SEARCH_LIMIT = 1 << 24

# Upper bound on samples held in one batch of spectral windows
_SPECTRAL_BATCH_ELEMENTS = 1 << 22


class CrossfadeMode(Enum):
    """How the seam is searched and whether the fade is beat-quantized."""
    MANUAL = "manual"
    BEAT_ALIGNED = "beat_aligned"
    SPECTRAL = "spectral"
    RHYTHMIC_BPM = "rhythmic_bpm"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def uses_tempo(self) -> bool:
        return self in (CrossfadeMode.BEAT_ALIGNED, CrossfadeMode.RHYTHMIC_BPM)

    @classmethod
    def parse(cls, value: Union[str, "CrossfadeMode"]) -> "CrossfadeMode":
        """Accept an enum member, its value, its name, or a legacy alias."""
        if isinstance(value, CrossfadeMode):
            return value
        key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown crossfade mode: {value}") from None


_DISPLAY_NAMES = {
    CrossfadeMode.MANUAL: "Manual",
    CrossfadeMode.BEAT_ALIGNED: "Beat Detection",
    CrossfadeMode.SPECTRAL: "Spectral",
    CrossfadeMode.RHYTHMIC_BPM: "Rhythmic BPM",
}

_ALIASES = {
    "beat_detection": "beat_aligned",
    "beatdetection": "beat_aligned",
    "beat": "beat_aligned",
    "rhythmic": "rhythmic_bpm",
}


class SpectralMethod(Enum):
    """Scoring used by the SPECTRAL strategy."""
    MAGNITUDE = "magnitude"      # minimize magnitude-spectrum distance
    CORRELATION = "correlation"  # maximize normalized windowed correlation


@dataclass(frozen=True)
class FadeSpec:
    """Requested crossfade duration."""
    duration_ms: float

    def __post_init__(self):
        if not self.duration_ms > 0:
            raise ValueError(f"Fade duration must be positive, got {self.duration_ms}")

    def fade_samples(self, sample_rate: float, frame_count: int) -> int:
        """
        Fade length in samples, clamped to [1, frame_count // 2].

        The upper bound keeps the head and tail fade regions from overlapping.
        """
        requested = ms_to_samples(self.duration_ms, sample_rate)
        upper = max(1, frame_count // 2)
        return min(max(requested, 1), upper)


@dataclass
class SeamSearchConfig:
    """
    Configuration for seam search.

    Attributes:
        spectral_method: Scoring for SPECTRAL mode
        spectral_batch: Candidate windows transformed per FFT batch
    """
    spectral_method: SpectralMethod = SpectralMethod.MAGNITUDE
    spectral_batch: int = 256


@dataclass
class SeamAnalysis:
    """
    Outcome of a seam search.

    Attributes:
        offset_frames: Chosen tail offset (never positive, never below -search_range)
        fade_samples: Fade length after any beat quantization
        search_range: Half-width of the searched offset interval
        score: Winning score (distance or similarity), None if no search ran
        mode: Mode that produced this analysis
        beat_frames: Beat length in samples when a tempo was applied
        candidates: Number of offsets scored
    """
    offset_frames: int
    fade_samples: int
    search_range: int
    mode: CrossfadeMode
    score: Optional[float] = None
    beat_frames: Optional[int] = None
    candidates: int = 0


@dataclass(frozen=True)
class LoopSeamResult:
    """Seam placement reported to callers."""
    offset_frames: int
    fade_samples: int
    center_time_seconds: float

    @classmethod
    def from_analysis(cls, analysis: SeamAnalysis, frame_count: int,
                      sample_rate: float) -> "LoopSeamResult":
        """
        Locate the seam midpoint on the original (pre-rotation) timeline.
        """
        mid = frame_count // 2
        center_frame = mid - analysis.fade_samples // 2 + analysis.offset_frames
        return cls(
            offset_frames=analysis.offset_frames,
            fade_samples=analysis.fade_samples,
            center_time_seconds=samples_to_seconds(center_frame, sample_rate),
        )


# === Search-space helpers ===

def search_range(total: int, fade_samples: int) -> int:
    """Half-width of the offset search; 0 means the buffer is too short to search."""
    return min(fade_samples, max(0, total - 2 * fade_samples))


def beat_frames(sample_rate: float, bpm: float) -> int:
    """Length of one beat in samples."""
    return int(round(sample_rate * 60.0 / bpm))


def quantize_fade(fade_samples: int, beat_length: int, limit: Optional[int] = None) -> int:
    """
    Snap a fade length to the nearest whole number of beats (at least one).

    With `limit`, the result never exceeds it: the largest whole number of
    beats that fits is used, or `limit` itself when not even one beat fits.
    """
    multiples = max(1, int(round(fade_samples / beat_length)))
    if limit is not None and multiples * beat_length > limit:
        multiples = limit // beat_length
        if multiples == 0:
            return limit
    return multiples * beat_length


def candidate_offsets(total: int, fade_samples: int, search: int, step: int = 1) -> np.ndarray:
    """
    Offsets from -search to +search in `step` increments whose tail window
    lies entirely inside the buffer.
    """
    offsets = np.arange(-search, search + 1, max(1, step), dtype=np.int64)
    starts = total - fade_samples + offsets
    valid = (starts >= 0) & (starts + fade_samples <= total)
    return offsets[valid]


def _usable_tempo(bpm: Optional[float]) -> bool:
    return bpm is not None and math.isfinite(bpm) and bpm > 0


class LoopSeamAnalyzer:
    """
    Selects the tail offset for a seamless loop.

    Only channel 0 is analyzed; the chosen offset is applied to every channel.
    """

    def __init__(self, config: Optional[SeamSearchConfig] = None):
        self.config = config or SeamSearchConfig()

    def analyze(self, buffer: AudioBuffer, fade_samples: int,
                mode: CrossfadeMode, tempo_bpm: Optional[float] = None) -> SeamAnalysis:
        """
        Find the best offset for the given mode.

        Args:
            buffer: Source audio
            fade_samples: Requested fade length in samples
            mode: Crossfade mode
            tempo_bpm: Optional tempo; ignored by modes that do not use it

        Returns:
            SeamAnalysis with offset and (possibly re-quantized) fade length
        """
        mode = CrossfadeMode.parse(mode)
        channel = buffer.channel(0)
        total = buffer.frame_count
        fade = int(fade_samples)

        beat_length = None
        if mode.uses_tempo and _usable_tempo(tempo_bpm):
            beat_length = beat_frames(buffer.sample_rate, tempo_bpm)
            if beat_length > 0:
                quantized = quantize_fade(fade, beat_length, limit=max(1, total // 2))
                logger.debug(f"Quantized fade {fade} -> {quantized} samples "
                             f"({quantized / beat_length:g} beats of {beat_length})")
                fade = quantized
            else:
                beat_length = None
        elif mode.uses_tempo:
            logger.debug("No tempo available, fade left unquantized")

        search = search_range(total, fade)
        analysis = SeamAnalysis(offset_frames=0, fade_samples=fade, search_range=search,
                                mode=mode, beat_frames=beat_length)

        if mode in (CrossfadeMode.MANUAL, CrossfadeMode.RHYTHMIC_BPM):
            return analysis

        if search == 0:
            logger.info(f"Buffer too short to search ({total} frames, fade {fade}), offset 0")
            return analysis

        if mode == CrossfadeMode.BEAT_ALIGNED:
            offsets = candidate_offsets(total, fade, search, step=beat_length or 1)
            scores = self.squared_difference_scores(channel, fade, offsets)
            best = int(np.argmin(scores))
        elif self.config.spectral_method == SpectralMethod.CORRELATION:
            offsets = candidate_offsets(total, fade, search)
            scores = self.windowed_correlation_scores(channel, fade, offsets)
            best = int(np.argmax(scores))
        else:
            offsets = candidate_offsets(total, fade, search)
            scores = self.spectral_distance_scores(channel, fade, offsets)
            best = int(np.argmin(scores))

        analysis.offset_frames = int(offsets[best])
        analysis.score = float(scores[best])
        analysis.candidates = len(offsets)

        logger.info(f"Seam search ({mode.value}): offset={analysis.offset_frames} "
                    f"of +/-{search}, fade={fade}, score={analysis.score:.6g}, "
                    f"candidates={analysis.candidates}")
        return analysis

    # === Scoring ===

    def _tail_segment(self, channel: np.ndarray, fade: int, offsets: np.ndarray):
        """Slice covering every candidate window; returns (segment, start_indices)."""
        starts = len(channel) - fade + offsets
        lo, hi = int(starts.min()), int(starts.max())
        segment = np.asarray(channel[lo:hi + fade], dtype=np.float64)
        return segment, starts - lo

    def squared_difference_scores(self, channel: np.ndarray, fade: int,
                                  offsets: np.ndarray) -> np.ndarray:
        """
        Sum of squared sample differences between head and each tail window.
        """
        head = np.asarray(channel[:fade], dtype=np.float64)
        segment, index = self._tail_segment(channel, fade, offsets)

        if len(offsets) * fade <= _DIRECT_SEARCH_LIMIT:
            windows = np.lib.stride_tricks.sliding_window_view(segment, fade)
            batch = max(1, _SPECTRAL_BATCH_ELEMENTS // fade)
            scores = np.empty(len(index), dtype=np.float64)
            for i in range(0, len(index), batch):
                diff = windows[index[i:i + batch]] - head
                scores[i:i + batch] = np.einsum('ij,ij->i', diff, diff)
            return scores

        # |t - h|^2 = |t|^2 + |h|^2 - 2 t.h, evaluated for every start at once
        energy = np.concatenate(([0.0], np.cumsum(segment * segment)))
        window_energy = energy[fade:] - energy[:-fade]
        cross = signal.correlate(segment, head, mode='valid')
        scores = window_energy + np.dot(head, head) - 2.0 * cross
        return np.maximum(scores[index], 0.0)

    def spectral_distance_scores(self, channel: np.ndarray, fade: int,
                                 offsets: np.ndarray) -> np.ndarray:
        """
        Euclidean distance between Hann-windowed magnitude spectra of the head
        and each tail window.
        """
        window = signal.get_window('hann', fade)
        head_mag = np.abs(sp_fft.rfft(np.asarray(channel[:fade], dtype=np.float64) * window))

        segment, index = self._tail_segment(channel, fade, offsets)
        windows = np.lib.stride_tricks.sliding_window_view(segment, fade)
        batch = max(1, min(self.config.spectral_batch, _SPECTRAL_BATCH_ELEMENTS // fade))

        scores = np.empty(len(index), dtype=np.float64)
        for i in range(0, len(index), batch):
            spectra = np.abs(sp_fft.rfft(windows[index[i:i + batch]] * window, axis=1))
            scores[i:i + batch] = np.linalg.norm(spectra - head_mag, axis=1)
        return scores

    def windowed_correlation_scores(self, channel: np.ndarray, fade: int,
                                    offsets: np.ndarray) -> np.ndarray:
        """
        Normalized correlation between Hann-windowed head and tail windows.
        Higher is better; 0 where either window is silent.
        """
        window = signal.get_window('hann', fade)
        head = np.asarray(channel[:fade], dtype=np.float64) * window
        head_norm = np.sqrt(np.dot(head, head))

        segment, index = self._tail_segment(channel, fade, offsets)
        weights = window * window
        dots = signal.correlate(segment, weights * np.asarray(channel[:fade], dtype=np.float64),
                                mode='valid')[index]
        energies = signal.correlate(segment * segment, weights, mode='valid')[index]
        norms = head_norm * np.sqrt(np.maximum(energies, 0.0))

        scores = np.zeros(len(index), dtype=np.float64)
        nonzero = norms > 0
        scores[nonzero] = dots[nonzero] / norms[nonzero]
        return scores
