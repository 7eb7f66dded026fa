"""
Container Formats - Which files can be imported and which can be written.
"""

from enum import Enum
from pathlib import Path
from typing import Optional, Union


class ContainerFormat(Enum):
    """Audio containers known to the engine."""
    WAV = "wav"      # Uncompressed, little-endian float PCM on export
    AIFF = "aiff"    # Uncompressed, big-endian float PCM on export
    MP3 = "mp3"      # Lossy, accepted for import only

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @property
    def supports_pcm_write(self) -> bool:
        return self in (ContainerFormat.WAV, ContainerFormat.AIFF)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> Optional["ContainerFormat"]:
        """Map a file extension to a container, or None if it is not importable."""
        return _EXTENSIONS.get(Path(path).suffix.lower())

    @classmethod
    def parse(cls, value: Union[str, "ContainerFormat"]) -> "ContainerFormat":
        if isinstance(value, ContainerFormat):
            return value
        key = str(value).strip().lower().lstrip(".")
        if key == "aif":
            key = "aiff"
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown container format: {value}") from None


_EXTENSIONS = {
    ".wav": ContainerFormat.WAV,
    ".aiff": ContainerFormat.AIFF,
    ".aif": ContainerFormat.AIFF,
    ".mp3": ContainerFormat.MP3,
}

# libsndfile major format and its native byte order for each writable container
SOUNDFILE_LAYOUTS = {
    ContainerFormat.WAV: ("WAV", "little"),   # RIFF
    ContainerFormat.AIFF: ("AIFF", "big"),    # FORM/AIFC
}


def is_importable(path: Union[str, Path]) -> bool:
    """True if the file extension is one the caller may import."""
    return ContainerFormat.from_path(path) is not None
