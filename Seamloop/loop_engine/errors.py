"""
Engine Errors - Typed failures surfaced to the caller of a processing job.

Recoverable conditions (no tempo found, buffer too short to search) are
never raised; they fall back to defaults inside the component that sees them.
"""


class LoopEngineError(Exception):
    """Base class for errors raised while processing a loop export job."""
    pass


class DecodeError(LoopEngineError):
    """Input file is missing, unreadable, corrupt, or in an unsupported format."""
    pass


class AllocationError(LoopEngineError):
    """A sample buffer could not be allocated."""
    pass


class FormatUnsupportedError(LoopEngineError):
    """The requested output container cannot be written as PCM."""
    pass


class OutputIOError(LoopEngineError, OSError):
    """Writing, replacing, or removing an output file failed."""
    pass
