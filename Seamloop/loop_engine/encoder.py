"""
Interleaved Encoder - Write planar buffers as 32-bit float PCM

WAV files are written little-endian, AIFF files big-endian. The output
appears atomically: samples go to a temporary file beside the destination,
which then replaces the destination in a single rename. New files get the
mode the umask allows; a replaced file keeps its permissions.
"""

import logging
import os
import stat
import uuid
from pathlib import Path
from typing import Union

import numpy as np
import soundfile as sf

from .errors import AllocationError, FormatUnsupportedError, OutputIOError
from .formats import ContainerFormat, SOUNDFILE_LAYOUTS
from .ingest import AudioBuffer
from .utils import format_file_size

logger = logging.getLogger(__name__)

# libsndfile command controlling the PEAK chunk, whose header embeds the
# wall-clock time of the write
_SFC_SET_ADD_PEAK_CHUNK = 0x1050

_TEMP_NAME_ATTEMPTS = 100


def _load_sf_command():
    """
    libsndfile's sf_command through soundfile's private cffi handles.

    Returns None when the installed soundfile no longer exposes them.
    """
    snd = getattr(sf, '_snd', None)
    ffi = getattr(sf, '_ffi', None)
    if snd is None or ffi is None or not hasattr(snd, 'sf_command'):
        return None

    def sf_command(handle, command: int, value: int) -> int:
        return snd.sf_command(handle, command, ffi.NULL, value)

    return sf_command


_sf_command = _load_sf_command()


def interleave(planar: np.ndarray) -> np.ndarray:
    """
    Flatten (channels, frames) into frame-major order.

    Sample `ch` of frame `n` lands at index `n * channels + ch`.
    """
    planar = np.asarray(planar)
    if planar.ndim == 1:
        return planar.copy()
    return np.ascontiguousarray(planar.T).reshape(-1)


def deinterleave(data: np.ndarray, channels: int) -> np.ndarray:
    """Inverse of interleave: 1-D frame-major data back to (channels, frames)."""
    data = np.asarray(data)
    if channels < 1 or len(data) % channels:
        raise ValueError(f"{len(data)} samples cannot be split into {channels} channels")
    return np.ascontiguousarray(data.reshape(-1, channels).T)


class InterleavedEncoder:
    """
    Writes AudioBuffers to uncompressed float containers.
    """

    def write(self, buffer: AudioBuffer, output_path: Union[str, Path],
              container_format: Union[str, ContainerFormat]) -> Path:
        """
        Encode a buffer, replacing any existing file at `output_path`.

        Args:
            buffer: Planar audio to write
            output_path: Destination file
            container_format: WAV or AIFF

        Returns:
            Path of the written file

        Raises:
            FormatUnsupportedError: If the container cannot be written as PCM
            OutputIOError: If the file cannot be written or moved into place
        """
        container_format = ContainerFormat.parse(container_format)
        if not container_format.supports_pcm_write:
            raise FormatUnsupportedError(
                f"{container_format.value.upper()} is import-only; export as WAV or AIFF"
            )

        output_path = Path(output_path)
        sf_format, byte_order = SOUNDFILE_LAYOUTS[container_format]

        try:
            interleaved = interleave(buffer.samples).astype(np.float32, copy=False)
        except MemoryError as e:
            raise AllocationError("Unable to allocate interleaved output buffer") from e

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._reserve_temp(output_path)
        except OSError as e:
            raise OutputIOError(f"Cannot create temporary file for {output_path}: {e}") from e

        try:
            self._encode(tmp_path, interleaved, buffer, sf_format)
            self._keep_existing_mode(tmp_path, output_path)
            os.replace(tmp_path, output_path)
        except (sf.SoundFileError, RuntimeError, OSError) as e:
            self._discard(tmp_path)
            raise OutputIOError(f"Failed to write {output_path}: {e}") from e
        except BaseException:
            self._discard(tmp_path)
            raise

        size = output_path.stat().st_size
        logger.info(f"Wrote {output_path.name} ({sf_format}, float32, {byte_order}-endian, "
                    f"{buffer.channel_count} ch, {format_file_size(size)})")
        return output_path

    def _encode(self, path: Path, interleaved: np.ndarray, buffer: AudioBuffer,
                sf_format: str) -> None:
        if _sf_command is None:
            raise RuntimeError(f"soundfile {sf.__version__} does not expose sf_command; "
                               "cannot disable the PEAK chunk")

        # libsndfile rejects an explicit byte order for float AIFF; the
        # container default is the one each format requires
        with sf.SoundFile(str(path), mode='w',
                          samplerate=int(round(buffer.sample_rate)),
                          channels=buffer.channel_count,
                          format=sf_format, subtype='FLOAT', endian='FILE') as f:
            handle = getattr(f, '_file', None)
            if handle is None:
                raise RuntimeError(f"soundfile {sf.__version__} SoundFile has no libsndfile handle")
            # Must precede the first write
            _sf_command(handle, _SFC_SET_ADD_PEAK_CHUNK, 0)
            f.buffer_write(interleaved.tobytes(), dtype='float32')

    @staticmethod
    def _reserve_temp(output_path: Path) -> Path:
        """Create an empty sibling temporary file; its mode follows the umask."""
        for _ in range(_TEMP_NAME_ATTEMPTS):
            candidate = output_path.with_name(
                f".{output_path.stem}.{uuid.uuid4().hex[:8]}{output_path.suffix}.tmp")
            try:
                fd = os.open(str(candidate), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o666)
            except FileExistsError:
                continue
            os.close(fd)
            return candidate
        raise FileExistsError(f"No free temporary file name beside {output_path}")

    @staticmethod
    def _keep_existing_mode(tmp_path: Path, output_path: Path) -> None:
        """Give the new file the permissions of the one it replaces."""
        try:
            mode = stat.S_IMODE(output_path.stat().st_mode)
        except FileNotFoundError:
            return
        os.chmod(tmp_path, mode)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove temporary file {path}: {e}")
