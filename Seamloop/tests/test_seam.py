"""
Tests for the loop seam analyzer.
"""

import pytest
import numpy as np
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from loop_engine import seam as seam_module
from loop_engine.ingest import AudioBuffer
from loop_engine.seam import (
    CrossfadeMode, SpectralMethod, FadeSpec, SeamSearchConfig, SeamAnalysis,
    LoopSeamResult, LoopSeamAnalyzer, search_range, beat_frames, quantize_fade,
    candidate_offsets
)


def planted_seam(total=4000, fade=200, shift=37, seed=0):
    """Noise whose tail window at offset -shift is an exact copy of the head."""
    rng = np.random.default_rng(seed)
    x = rng.standard_normal(total).astype(np.float32)
    start = total - fade - shift
    x[start:start + fade] = x[:fade]
    return AudioBuffer(x, sample_rate=8000)


class TestFadeSpec:
    """Fade length sizing."""

    def test_rounds_duration_to_samples(self):
        assert FadeSpec(1000).fade_samples(44100, 441000) == 44100
        assert FadeSpec(10).fade_samples(44100, 441000) == 441

    def test_clamps_to_half_the_buffer(self):
        assert FadeSpec(1000).fade_samples(44100, 1000) == 500
        assert FadeSpec(1000).fade_samples(44100, 1001) == 500

    def test_never_below_one_sample(self):
        assert FadeSpec(0.001).fade_samples(44100, 1000) == 1
        assert FadeSpec(1000).fade_samples(44100, 1) == 1

    @pytest.mark.parametrize("sample_rate", [8000, 22050, 44100, 48000, 96000])
    @pytest.mark.parametrize("duration_ms", [0.5, 3.7, 250, 30000])
    @pytest.mark.parametrize("frames", [1, 17, 4410, 10 ** 6])
    def test_matches_clamped_rounding(self, sample_rate, duration_ms, frames):
        expected = round(sample_rate * duration_ms / 1000)
        expected = min(max(expected, 1), max(1, frames // 2))
        assert FadeSpec(duration_ms).fade_samples(sample_rate, frames) == expected

    @pytest.mark.parametrize("duration_ms", [0, -5])
    def test_rejects_non_positive_duration(self, duration_ms):
        with pytest.raises(ValueError):
            FadeSpec(duration_ms)


class TestCrossfadeMode:
    """Mode parsing and properties."""

    def test_parse_accepts_values_names_and_aliases(self):
        assert CrossfadeMode.parse("spectral") is CrossfadeMode.SPECTRAL
        assert CrossfadeMode.parse("BEAT_ALIGNED") is CrossfadeMode.BEAT_ALIGNED
        assert CrossfadeMode.parse("Beat Detection") is CrossfadeMode.BEAT_ALIGNED
        assert CrossfadeMode.parse("rhythmic-bpm") is CrossfadeMode.RHYTHMIC_BPM
        assert CrossfadeMode.parse(CrossfadeMode.MANUAL) is CrossfadeMode.MANUAL

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            CrossfadeMode.parse("granular")

    def test_tempo_modes(self):
        assert CrossfadeMode.BEAT_ALIGNED.uses_tempo
        assert CrossfadeMode.RHYTHMIC_BPM.uses_tempo
        assert not CrossfadeMode.MANUAL.uses_tempo
        assert not CrossfadeMode.SPECTRAL.uses_tempo

    def test_display_names(self):
        assert CrossfadeMode.BEAT_ALIGNED.display_name == "Beat Detection"
        assert CrossfadeMode.RHYTHMIC_BPM.display_name == "Rhythmic BPM"


class TestSearchHelpers:
    """Search-space arithmetic."""

    def test_search_range(self):
        assert search_range(4000, 200) == 200
        assert search_range(1000, 450) == 100
        assert search_range(1000, 500) == 0
        assert search_range(10, 400) == 0

    def test_beat_frames(self):
        assert beat_frames(44100, 120) == 22050
        assert beat_frames(1000, 90) == 667

    def test_quantize_fade(self):
        assert quantize_fade(700, 500) == 500
        assert quantize_fade(800, 500) == 1000
        assert quantize_fade(100, 500) == 500

    def test_quantize_fade_respects_limit(self):
        # Four beats would exceed the limit; three fit
        assert quantize_fade(1800, 500, limit=1500) == 1500
        assert quantize_fade(1800, 500, limit=1700) == 1500
        # Not even one beat fits
        assert quantize_fade(100, 500, limit=300) == 300
        assert quantize_fade(700, 500, limit=1500) == 500

    def test_candidates_skip_positive_offsets(self):
        offsets = candidate_offsets(4000, 200, 50)
        assert offsets.min() == -50
        assert offsets.max() == 0
        assert len(offsets) == 51

    def test_candidates_step(self):
        offsets = candidate_offsets(4000, 200, 100, step=30)
        assert list(offsets) == [-100, -70, -40, -10]


class TestLoopSeamAnalyzer:
    """Strategy selection and offset bounds."""

    @pytest.fixture
    def analyzer(self):
        return LoopSeamAnalyzer()

    @pytest.fixture
    def noise(self):
        rng = np.random.default_rng(42)
        return AudioBuffer(rng.standard_normal(4000), sample_rate=8000)

    def test_manual_never_searches(self, analyzer):
        buffer = planted_seam()
        analysis = analyzer.analyze(buffer, 200, CrossfadeMode.MANUAL)
        assert analysis.offset_frames == 0
        assert analysis.fade_samples == 200
        assert analysis.score is None

    @pytest.mark.parametrize("mode", list(CrossfadeMode))
    def test_offset_within_search_range(self, analyzer, noise, mode):
        analysis = analyzer.analyze(noise, 300, mode)
        assert -analysis.search_range <= analysis.offset_frames <= analysis.search_range
        assert analysis.offset_frames <= 0

    @pytest.mark.parametrize("mode", [CrossfadeMode.BEAT_ALIGNED, CrossfadeMode.SPECTRAL])
    def test_zero_search_range_returns_zero(self, analyzer, mode):
        rng = np.random.default_rng(1)
        buffer = AudioBuffer(rng.standard_normal(1000), sample_rate=8000)
        analysis = analyzer.analyze(buffer, 500, mode)
        assert analysis.search_range == 0
        assert analysis.offset_frames == 0

    def test_beat_aligned_finds_planted_seam(self, analyzer):
        analysis = analyzer.analyze(planted_seam(shift=37), 200, CrossfadeMode.BEAT_ALIGNED)
        assert analysis.offset_frames == -37
        assert analysis.score == pytest.approx(0.0, abs=1e-6)

    def test_spectral_magnitude_finds_planted_seam(self, analyzer):
        analysis = analyzer.analyze(planted_seam(shift=91), 200, CrossfadeMode.SPECTRAL)
        assert analysis.offset_frames == -91
        assert analysis.score == pytest.approx(0.0, abs=1e-4)

    def test_spectral_correlation_finds_planted_seam(self):
        analyzer = LoopSeamAnalyzer(SeamSearchConfig(spectral_method=SpectralMethod.CORRELATION))
        analysis = analyzer.analyze(planted_seam(shift=12), 200, CrossfadeMode.SPECTRAL)
        assert analysis.offset_frames == -12
        assert analysis.score == pytest.approx(1.0, abs=1e-6)

    def test_small_spectral_batches_match(self, noise):
        default = LoopSeamAnalyzer().analyze(noise, 300, CrossfadeMode.SPECTRAL)
        batched = LoopSeamAnalyzer(SeamSearchConfig(spectral_batch=7)).analyze(
            noise, 300, CrossfadeMode.SPECTRAL)
        assert batched.offset_frames == default.offset_frames
        assert batched.score == pytest.approx(default.score)

    def test_fft_squared_difference_matches_direct(self, analyzer, noise, monkeypatch):
        channel = noise.channel(0)
        offsets = candidate_offsets(noise.frame_count, 300, 300)
        direct = analyzer.squared_difference_scores(channel, 300, offsets)

        monkeypatch.setattr(seam_module, "_DIRECT_SEARCH_LIMIT", 0)
        via_fft = analyzer.squared_difference_scores(channel, 300, offsets)

        np.testing.assert_allclose(via_fft, direct, rtol=1e-6, atol=1e-6)

    def test_beat_aligned_with_tempo_steps_by_beat(self, analyzer):
        rng = np.random.default_rng(3)
        buffer = AudioBuffer(rng.standard_normal(4000), sample_rate=1000)
        # 120 BPM at 1 kHz is 500 samples per beat
        analysis = analyzer.analyze(buffer, 700, CrossfadeMode.BEAT_ALIGNED, tempo_bpm=120)
        assert analysis.beat_frames == 500
        assert analysis.fade_samples == 500
        assert analysis.offset_frames % 500 == 0
        assert analysis.candidates == 2

    def test_rhythmic_bpm_quantizes_without_search(self, analyzer):
        buffer = planted_seam(total=4000, fade=200, shift=37)
        analysis = analyzer.analyze(buffer, 700, CrossfadeMode.RHYTHMIC_BPM, tempo_bpm=960)
        # 960 BPM at 8 kHz is 500 samples per beat
        assert analysis.fade_samples == 500
        assert analysis.offset_frames == 0
        assert analysis.candidates == 0

    @pytest.mark.parametrize("mode", [CrossfadeMode.BEAT_ALIGNED, CrossfadeMode.RHYTHMIC_BPM])
    def test_quantized_fade_stays_within_half_the_buffer(self, analyzer, mode):
        sr = 44100
        t = np.arange(3 * sr) / sr
        buffer = AudioBuffer(np.sin(2 * np.pi * 220 * t), sample_rate=sr)
        fade = FadeSpec(1000).fade_samples(sr, buffer.frame_count)
        # 30 BPM is 88200 samples per beat, longer than half the buffer
        analysis = analyzer.analyze(buffer, fade, mode, tempo_bpm=30)
        assert analysis.fade_samples == buffer.frame_count // 2

        result = LoopSeamResult.from_analysis(analysis, buffer.frame_count, sr)
        assert result.fade_samples == 66150
        assert result.center_time_seconds == pytest.approx(0.75)

    def test_quantized_fade_falls_back_to_whole_beats(self, analyzer):
        rng = np.random.default_rng(4)
        buffer = AudioBuffer(rng.standard_normal(3000), sample_rate=1000)
        # 120 BPM at 1 kHz: 1800 rounds to four beats, only three fit in 1500
        analysis = analyzer.analyze(buffer, 1800, CrossfadeMode.RHYTHMIC_BPM, tempo_bpm=120)
        assert analysis.fade_samples == 1500
        assert analysis.beat_frames == 500

    @pytest.mark.parametrize("tempo", [None, 0.0, -10.0, float("nan")])
    def test_unusable_tempo_leaves_fade_alone(self, analyzer, noise, tempo):
        analysis = analyzer.analyze(noise, 300, CrossfadeMode.RHYTHMIC_BPM, tempo_bpm=tempo)
        assert analysis.fade_samples == 300
        assert analysis.beat_frames is None

    def test_spectral_ignores_tempo(self, analyzer, noise):
        analysis = analyzer.analyze(noise, 300, CrossfadeMode.SPECTRAL, tempo_bpm=120)
        assert analysis.fade_samples == 300
        assert analysis.beat_frames is None

    def test_only_first_channel_is_analyzed(self, analyzer):
        first = planted_seam(shift=37).channel(0)
        rng = np.random.default_rng(9)
        stereo = AudioBuffer(np.stack([first, rng.standard_normal(len(first))]), sample_rate=8000)
        analysis = analyzer.analyze(stereo, 200, CrossfadeMode.BEAT_ALIGNED)
        assert analysis.offset_frames == -37


class TestLoopSeamResult:
    """Center time on the original timeline."""

    def test_center_time(self):
        analysis = SeamAnalysis(offset_frames=-10, fade_samples=44100, search_range=44100,
                                mode=CrossfadeMode.SPECTRAL)
        result = LoopSeamResult.from_analysis(analysis, 441000, 44100)
        assert result.center_time_seconds == pytest.approx((220500 - 22050 - 10) / 44100)
        assert result.offset_frames == -10
        assert result.fade_samples == 44100

    def test_odd_fade_uses_integer_half(self):
        analysis = SeamAnalysis(offset_frames=0, fade_samples=5, search_range=0,
                                mode=CrossfadeMode.MANUAL)
        result = LoopSeamResult.from_analysis(analysis, 101, 10)
        assert result.center_time_seconds == pytest.approx((50 - 2) / 10)
