"""
Tests for the interleaved float PCM encoder.
"""

import pytest
import numpy as np
import soundfile as sf
import sys
import os
import stat

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from loop_engine import encoder as encoder_module
from loop_engine.encoder import InterleavedEncoder, interleave, deinterleave
from loop_engine.errors import FormatUnsupportedError, OutputIOError
from loop_engine.formats import ContainerFormat
from loop_engine.ingest import AudioBuffer


def chunk_payload(raw: bytes, chunk_id: bytes, byteorder: str) -> bytes:
    """Return the body of the first chunk with the given id."""
    index = raw.index(chunk_id)
    size = int.from_bytes(raw[index + 4:index + 8], byteorder)
    return raw[index + 8:index + 8 + size]


@pytest.fixture
def stereo():
    left = np.array([0.25, -0.5, 0.75, 0.125], dtype=np.float32)
    right = np.array([-1.0, 0.5, 0.0, 0.0625], dtype=np.float32)
    return AudioBuffer(np.stack([left, right]), sample_rate=44100)


class TestInterleave:
    """Planar to frame-major conversion."""

    def test_addressing(self):
        planar = np.array([[0, 1, 2], [10, 11, 12]])
        flat = interleave(planar)
        np.testing.assert_array_equal(flat, [0, 10, 1, 11, 2, 12])
        for frame in range(3):
            for ch in range(2):
                assert flat[frame * 2 + ch] == planar[ch, frame]

    def test_inverse(self):
        planar = np.arange(12).reshape(3, 4)
        np.testing.assert_array_equal(deinterleave(interleave(planar), 3), planar)

    def test_deinterleave_rejects_ragged(self):
        with pytest.raises(ValueError):
            deinterleave(np.arange(7), 2)


class TestInterleavedEncoder:
    """Writing float WAV and AIFF."""

    @pytest.fixture
    def encoder(self):
        return InterleavedEncoder()

    def test_wav_is_little_endian_float(self, encoder, stereo, tmp_path):
        path = encoder.write(stereo, tmp_path / "out.wav", ContainerFormat.WAV)

        raw = path.read_bytes()
        assert raw[:4] == b"RIFF"
        payload = chunk_payload(raw, b"data", "little")
        np.testing.assert_array_equal(np.frombuffer(payload, dtype="<f4"),
                                      interleave(stereo.samples))

        info = sf.info(str(path))
        assert info.subtype == "FLOAT"
        assert info.samplerate == 44100
        assert info.channels == 2

    def test_aiff_is_big_endian_float(self, encoder, stereo, tmp_path):
        path = encoder.write(stereo, tmp_path / "out.aiff", "aiff")

        raw = path.read_bytes()
        assert raw[:4] == b"FORM"
        # SSND body starts with 4-byte offset and block size fields
        payload = chunk_payload(raw, b"SSND", "big")[8:]
        np.testing.assert_array_equal(np.frombuffer(payload, dtype=">f4"),
                                      interleave(stereo.samples))

    @pytest.mark.parametrize("fmt", [ContainerFormat.WAV, ContainerFormat.AIFF])
    def test_round_trip_through_soundfile(self, encoder, stereo, tmp_path, fmt):
        path = encoder.write(stereo, tmp_path / f"out{fmt.extension}", fmt)
        data, sample_rate = sf.read(str(path), dtype='float32', always_2d=True)
        assert sample_rate == 44100
        np.testing.assert_array_equal(data.T, stereo.samples)

    def test_mp3_rejected_before_touching_disk(self, encoder, stereo, tmp_path):
        target = tmp_path / "out.mp3"
        with pytest.raises(FormatUnsupportedError):
            encoder.write(stereo, target, ContainerFormat.MP3)
        assert not target.exists()
        assert list(tmp_path.iterdir()) == []

    def test_overwrites_existing_file(self, encoder, stereo, tmp_path):
        target = tmp_path / "out.wav"
        target.write_bytes(b"stale")
        encoder.write(stereo, target, ContainerFormat.WAV)
        assert target.read_bytes()[:4] == b"RIFF"

    @pytest.mark.parametrize("fmt", [ContainerFormat.WAV, ContainerFormat.AIFF])
    def test_rewrite_is_byte_identical(self, encoder, stereo, tmp_path, fmt):
        target = tmp_path / f"out{fmt.extension}"
        first = encoder.write(stereo, target, fmt).read_bytes()
        second = encoder.write(stereo, target, fmt).read_bytes()
        assert first == second

    def test_failed_write_leaves_destination_intact(self, encoder, stereo, tmp_path, monkeypatch):
        target = tmp_path / "out.wav"
        target.write_bytes(b"previous export")

        def failing_encode(path, *args):
            path.write_bytes(b"partial")
            raise RuntimeError("disk full")

        monkeypatch.setattr(encoder, "_encode", failing_encode)

        with pytest.raises(OutputIOError) as exc_info:
            encoder.write(stereo, target, ContainerFormat.WAV)

        assert isinstance(exc_info.value, OSError)
        assert target.read_bytes() == b"previous export"
        assert [p.name for p in tmp_path.iterdir()] == ["out.wav"]

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permission bits")
    def test_new_file_mode_follows_umask(self, encoder, stereo, tmp_path):
        previous = os.umask(0o022)
        try:
            path = encoder.write(stereo, tmp_path / "out.wav", ContainerFormat.WAV)
        finally:
            os.umask(previous)
        assert stat.S_IMODE(path.stat().st_mode) == 0o644

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permission bits")
    def test_replaced_file_keeps_its_mode(self, encoder, stereo, tmp_path):
        target = tmp_path / "out.aiff"
        target.write_bytes(b"previous export")
        os.chmod(target, 0o640)
        encoder.write(stereo, target, ContainerFormat.AIFF)
        assert stat.S_IMODE(target.stat().st_mode) == 0o640

    def test_missing_sf_command_fails_loudly(self, encoder, stereo, tmp_path, monkeypatch):
        monkeypatch.setattr(encoder_module, "_sf_command", None)
        with pytest.raises(OutputIOError, match="sf_command"):
            encoder.write(stereo, tmp_path / "out.wav", ContainerFormat.WAV)
        assert list(tmp_path.iterdir()) == []

    def test_creates_output_directory(self, encoder, stereo, tmp_path):
        target = tmp_path / "nested" / "dir" / "out.wav"
        encoder.write(stereo, target, ContainerFormat.WAV)
        assert target.is_file()

    def test_sample_rate_and_channels_carried_through(self, encoder, tmp_path):
        buffer = AudioBuffer(np.zeros((3, 50)), sample_rate=96000)
        path = encoder.write(buffer, tmp_path / "out.wav", ContainerFormat.WAV)
        info = sf.info(str(path))
        assert info.samplerate == 96000
        assert info.channels == 3
        assert info.frames == 50
