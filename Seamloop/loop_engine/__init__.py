"""
Seamloop Loop Engine - Seamless loop export

Core modules for turning a one-shot recording into a file that loops
without an audible seam: seam search, equal-power crossfade, seam
centering and float PCM export.
"""

from .pipeline import (LoopPipeline, PipelineConfig, ProcessingJob, ProcessingResult,
                       ProcessingCallbacks, JobStage)
from .ingest import AudioBuffer, AudioBufferLoader
from .seam import CrossfadeMode, LoopSeamAnalyzer, LoopSeamResult
from .tempo import BPMEstimator
from .crossfade import CrossfadeCompositor, FadeLaw
from .rotation import BufferRotator
from .encoder import InterleavedEncoder
from .formats import ContainerFormat
from .cache import PreviewCache, PreviewKey
from .errors import (LoopEngineError, DecodeError, AllocationError,
                     FormatUnsupportedError, OutputIOError)

__version__ = "1.0.0"
__all__ = [
    "LoopPipeline", "PipelineConfig", "ProcessingJob", "ProcessingResult",
    "ProcessingCallbacks", "JobStage", "AudioBuffer", "AudioBufferLoader",
    "CrossfadeMode", "LoopSeamAnalyzer", "LoopSeamResult", "BPMEstimator",
    "CrossfadeCompositor", "FadeLaw", "BufferRotator", "InterleavedEncoder",
    "ContainerFormat", "PreviewCache", "PreviewKey", "LoopEngineError",
    "DecodeError", "AllocationError", "FormatUnsupportedError", "OutputIOError",
]
