"""
Preview Cache - Reuse rendered loop previews

Rendered previews are stored at a content-addressed path derived from the
source file and the export parameters. Each render has a sibling `.center`
file holding the seam's center time as decimal text; a render counts as
cached only when both files exist.
"""

import json
import hashlib
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .formats import ContainerFormat
from .seam import CrossfadeMode
from .utils import format_file_size

logger = logging.getLogger(__name__)

CENTER_SUFFIX = ".center"


@dataclass(frozen=True)
class PreviewKey:
    """Parameters that determine a preview render."""
    source_path: Path
    fade_duration_ms: float
    crossfade_mode: CrossfadeMode
    tempo_bpm: Optional[float] = None
    container_format: ContainerFormat = ContainerFormat.WAV

    def digest(self) -> str:
        """Stable md5 of the canonical key string."""
        tempo = "none" if self.tempo_bpm is None else f"{float(self.tempo_bpm):.3f}"
        key_string = "|".join([
            str(Path(self.source_path).resolve()),
            f"{float(self.fade_duration_ms):.3f}",
            CrossfadeMode.parse(self.crossfade_mode).value,
            tempo,
            ContainerFormat.parse(self.container_format).value,
        ])
        return hashlib.md5(key_string.encode()).hexdigest()


@dataclass
class CacheEntry:
    """Metadata for a cached preview."""
    key: str
    created_at: str
    file_path: str
    size_bytes: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "key": self.key,
            "created_at": self.created_at,
            "file_path": self.file_path,
            "size_bytes": self.size_bytes,
            "metadata": self.metadata
        }


class PreviewCache:
    """
    Disk cache for rendered loop previews.

    The cache is owned by the caller and handed to the pipeline; the
    pipeline itself keeps no cache state.
    """

    def __init__(self, cache_dir=None):
        """
        Initialize preview cache.

        Args:
            cache_dir: Cache directory (defaults to ./cache/previews next to the package)
        """
        if cache_dir is None:
            cache_dir = Path(__file__).parent.parent / "cache" / "previews"

        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._index_file = self.cache_dir / "cache_index.json"
        self._index = self._load_index()

        logger.info(f"Preview cache initialized: {self.cache_dir}")

    def _load_index(self) -> Dict[str, CacheEntry]:
        """Load cache index from disk."""
        if self._index_file.exists():
            try:
                with open(self._index_file, 'r') as f:
                    data = json.load(f)
                    return {entry['key']: CacheEntry(**entry) for entry in data}
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Failed to load cache index: {e}")
        return {}

    def _save_index(self):
        """Save cache index to disk."""
        try:
            with open(self._index_file, 'w') as f:
                json.dump([entry.to_dict() for entry in self._index.values()], f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save cache index: {e}")

    # === Paths ===

    def path_for(self, key: PreviewKey) -> Path:
        """Audio path for a key."""
        fmt = ContainerFormat.parse(key.container_format)
        return self.cache_dir / f"{key.digest()}{fmt.extension}"

    @staticmethod
    def center_path(audio_path: Path) -> Path:
        return audio_path.with_suffix(CENTER_SUFFIX)

    # === Lookup / Store ===

    def get(self, key: PreviewKey) -> Optional[Tuple[Path, float]]:
        """
        Look up a rendered preview.

        Returns:
            (audio_path, center_time_seconds), or None on a miss
        """
        audio_path = self.path_for(key)
        center_path = self.center_path(audio_path)

        if not (audio_path.is_file() and center_path.is_file()):
            return None

        try:
            center_time = float(center_path.read_text().strip())
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable cache entry {center_path.name}: {e}")
            return None

        logger.debug(f"Retrieved cached preview: {audio_path.name}")
        return audio_path, center_time

    def put(self, key: PreviewKey, center_time_seconds: float) -> Path:
        """
        Record a preview already rendered to path_for(key).

        Args:
            key: Preview key
            center_time_seconds: Seam center time reported by the pipeline

        Returns:
            Path of the audio file
        """
        audio_path = self.path_for(key)
        if not audio_path.is_file():
            raise FileNotFoundError(f"No rendered preview at {audio_path}")

        center_path = self.center_path(audio_path)
        fd, tmp_name = tempfile.mkstemp(prefix=".center.", dir=str(self.cache_dir))
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(repr(float(center_time_seconds)))
            os.replace(tmp_name, center_path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        digest = key.digest()
        with self._lock:
            self._index[digest] = CacheEntry(
                key=digest,
                created_at=datetime.now().isoformat(),
                file_path=str(audio_path),
                size_bytes=audio_path.stat().st_size,
                metadata={
                    "source": str(key.source_path),
                    "fade_duration_ms": key.fade_duration_ms,
                    "crossfade_mode": CrossfadeMode.parse(key.crossfade_mode).value,
                    "tempo_bpm": key.tempo_bpm,
                    "center_time_seconds": float(center_time_seconds)
                }
            )
            self._save_index()

        logger.info(f"Cached preview: {digest[:8]}... "
                    f"({format_file_size(audio_path.stat().st_size)})")
        return audio_path

    # === Cache Management ===

    def _remove_files(self, audio_path: Path):
        for path in (audio_path, self.center_path(audio_path)):
            if path.exists():
                path.unlink()

    def invalidate(self, key: PreviewKey) -> bool:
        """Remove one preview. Returns True if anything was removed."""
        audio_path = self.path_for(key)
        existed = audio_path.exists() or self.center_path(audio_path).exists()
        self._remove_files(audio_path)

        digest = key.digest()
        with self._lock:
            if self._index.pop(digest, None) is not None:
                self._save_index()
                existed = True

        if existed:
            logger.info(f"Invalidated cache entry: {digest[:8]}...")
        return existed

    def get_cache_size(self) -> int:
        """Get total size of indexed previews in bytes."""
        total = 0
        with self._lock:
            entries = list(self._index.values())
        for entry in entries:
            path = Path(entry.file_path)
            if path.exists():
                total += path.stat().st_size
        return total

    def get_cache_info(self) -> Dict[str, Any]:
        """Get cache statistics."""
        size = self.get_cache_size()
        return {
            "cache_dir": str(self.cache_dir),
            "total_size_bytes": size,
            "total_size": format_file_size(size),
            "item_count": len(self._index)
        }

    def cleanup(self, max_bytes: int) -> int:
        """
        Remove oldest previews until the cache fits in `max_bytes`.

        Returns:
            Bytes freed
        """
        current_size = self.get_cache_size()
        if current_size <= max_bytes:
            logger.debug("Cache cleanup not needed")
            return 0

        freed = 0
        with self._lock:
            # Oldest first
            for entry in sorted(self._index.values(), key=lambda e: e.created_at):
                if current_size - freed <= max_bytes:
                    break
                self._remove_files(Path(entry.file_path))
                freed += entry.size_bytes
                del self._index[entry.key]
                logger.info(f"Cleaned up cache entry: {entry.key[:8]}...")
            self._save_index()

        logger.info(f"Cache cleanup: freed {format_file_size(freed)}")
        return freed

    def clear(self):
        """Clear all cached previews."""
        with self._lock:
            for entry in self._index.values():
                self._remove_files(Path(entry.file_path))
            self._index.clear()
            self._save_index()
        logger.info("Preview cache cleared")
