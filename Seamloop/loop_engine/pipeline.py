"""
Loop Pipeline - Orchestrates one seamless-loop export per job

Coordinates the stages of a loop export:
Read → Analyze → Composite → Rotate → Encode

Jobs are self-contained: each owns its buffer and shares no mutable state
with sibling jobs, so any number can run on the worker pool at once.
"""

import logging
import time
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .cache import PreviewCache, PreviewKey
from .crossfade import CrossfadeCompositor, CrossfadeConfig, FadeLaw
from .encoder import InterleavedEncoder
from .errors import LoopEngineError
from .formats import ContainerFormat
from .ingest import AudioBuffer, AudioBufferLoader
from .rotation import BufferRotator
from .seam import (CrossfadeMode, FadeSpec, LoopSeamAnalyzer, LoopSeamResult,
                   SeamSearchConfig)
from .tempo import BPMEstimator, TempoConfig

logger = logging.getLogger(__name__)


class JobStage(Enum):
    """Lifecycle of a processing job."""
    PENDING = "pending"
    READING = "reading"
    ANALYZING = "analyzing"
    COMPOSITING = "compositing"
    ROTATING = "rotating"
    ENCODING = "encoding"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStage.SUCCEEDED, JobStage.FAILED)


@dataclass
class PipelineConfig:
    """Configuration for the loop pipeline."""
    # Worker pool used by submit() / process_batch()
    max_workers: int = 4

    # Estimate tempo for tempo-driven modes when the job supplies none
    estimate_tempo: bool = True

    # Crossfade gain curve
    fade_law: FadeLaw = FadeLaw.EQUAL_POWER

    search: SeamSearchConfig = field(default_factory=SeamSearchConfig)
    tempo: TempoConfig = field(default_factory=TempoConfig)


@dataclass(frozen=True)
class ProcessingJob:
    """One input file to be exported as a seamless loop."""
    input_path: Path
    output_path: Path
    fade_duration_ms: float
    container_format: ContainerFormat = ContainerFormat.WAV
    crossfade_mode: CrossfadeMode = CrossfadeMode.MANUAL
    tempo_bpm: Optional[float] = None

    def __post_init__(self):
        # Normalize loosely-typed arguments on a frozen instance
        object.__setattr__(self, "input_path", Path(self.input_path))
        object.__setattr__(self, "output_path", Path(self.output_path))
        object.__setattr__(self, "container_format", ContainerFormat.parse(self.container_format))
        object.__setattr__(self, "crossfade_mode", CrossfadeMode.parse(self.crossfade_mode))


@dataclass
class ProcessingResult:
    """Terminal outcome of a processing job."""
    job: ProcessingJob
    success: bool
    output_path: Optional[Path] = None
    center_time_seconds: Optional[float] = None
    offset_frames: Optional[int] = None
    fade_samples: Optional[int] = None
    tempo_bpm: Optional[float] = None
    error: Optional[BaseException] = None
    error_message: Optional[str] = None
    stage_times: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "success": self.success,
            "input": str(self.job.input_path),
            "output": str(self.output_path) if self.output_path else None,
            "mode": self.job.crossfade_mode.value,
            "format": self.job.container_format.value,
            "seam": {
                "center_time_seconds": self.center_time_seconds,
                "offset_frames": self.offset_frames,
                "fade_samples": self.fade_samples,
                "tempo_bpm": self.tempo_bpm,
            },
            "processing_time": {
                "total": f"{sum(self.stage_times.values()):.2f}s",
                "by_stage": {k: f"{v:.2f}s" for k, v in self.stage_times.items()}
            },
            "error": self.error_message
        }


@dataclass
class ProcessingCallbacks:
    """
    Callbacks for reporting job progress.

    Invoked from whichever thread runs the job; callers marshal to their
    own thread if they need to. Exceptions raised by a callback are logged
    and otherwise ignored.
    """

    on_progress: Optional[Callable[[float], None]] = None  # fraction in [0, 1]
    on_stage: Optional[Callable[[JobStage], None]] = None
    on_complete: Optional[Callable[[ProcessingResult], None]] = None  # exactly once

    def report_progress(self, fraction: float) -> None:
        self._invoke(self.on_progress, fraction)

    def report_stage(self, stage: JobStage) -> None:
        self._invoke(self.on_stage, stage)

    def report_complete(self, result: ProcessingResult) -> None:
        self._invoke(self.on_complete, result)

    @staticmethod
    def _invoke(callback: Optional[Callable], value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logger.exception("Progress callback raised; ignoring")


class LoopPipeline:
    """
    Seamless-loop export pipeline.

    Orchestrates the workflow for each job:
    1. Read: decode the input at its native rate and channel count
    2. Analyze: size the fade, estimate tempo if needed, search for the seam
    3. Composite: blend the tail into the head on every channel
    4. Rotate: move the seam to the buffer midpoint
    5. Encode: write float PCM atomically

    Usage:
        with LoopPipeline() as pipeline:
            results = pipeline.process_batch(jobs)
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        """
        Initialize the loop pipeline.

        Args:
            config: Pipeline configuration (uses defaults if None)
        """
        self.config = config or PipelineConfig()

        # Components hold configuration only; safe to share across workers
        self._loader = AudioBufferLoader()
        self._estimator = BPMEstimator(self.config.tempo)
        self._analyzer = LoopSeamAnalyzer(self.config.search)
        self._compositor = CrossfadeCompositor(CrossfadeConfig(fade_law=self.config.fade_law))
        self._rotator = BufferRotator()
        self._encoder = InterleavedEncoder()

        self._executor: Optional[ThreadPoolExecutor] = None

        logger.info(f"Initialized LoopPipeline: workers={self.config.max_workers}, "
                    f"fade_law={self.config.fade_law.value}")

    def _get_executor(self) -> ThreadPoolExecutor:
        """Get or create the worker pool."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.config.max_workers,
                                                thread_name_prefix="loop-job")
        return self._executor

    # === Context management ===

    def __enter__(self) -> "LoopPipeline":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        """Release the worker pool. Running jobs finish first when `wait` is True."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    # === Job execution ===

    def process(self, job: ProcessingJob,
                callbacks: Optional[ProcessingCallbacks] = None) -> ProcessingResult:
        """
        Run one job to completion in the calling thread.

        Failures are captured in the returned result rather than raised.

        Args:
            job: Job description
            callbacks: Optional progress/stage/completion callbacks

        Returns:
            ProcessingResult (on_complete receives the same object)
        """
        callbacks = callbacks or ProcessingCallbacks()
        stage_times: Dict[str, float] = {}

        logger.info(f"Starting loop export: {job.input_path.name} -> {job.output_path.name} "
                    f"({job.crossfade_mode.value}, {job.fade_duration_ms:g} ms, "
                    f"{job.container_format.value})")
        callbacks.report_stage(JobStage.PENDING)
        callbacks.report_progress(0.0)

        try:
            seam, tempo_bpm = self._run_stages(job, callbacks, stage_times)
        except LoopEngineError as e:
            logger.error(f"Loop export failed for {job.input_path.name}: {e}")
            result = self._failure(job, e, stage_times)
            callbacks.report_stage(JobStage.FAILED)
        except Exception as e:
            logger.error(f"Unexpected error exporting {job.input_path.name}: {e}")
            logger.error(traceback.format_exc())
            result = self._failure(job, e, stage_times)
            callbacks.report_stage(JobStage.FAILED)
        else:
            result = ProcessingResult(
                job=job,
                success=True,
                output_path=job.output_path,
                center_time_seconds=seam.center_time_seconds,
                offset_frames=seam.offset_frames,
                fade_samples=seam.fade_samples,
                tempo_bpm=tempo_bpm,
                stage_times=stage_times
            )
            logger.info(f"  ✅ {job.output_path.name}: seam at "
                        f"{seam.center_time_seconds:.3f}s "
                        f"(offset {seam.offset_frames}, fade {seam.fade_samples})")
            callbacks.report_stage(JobStage.SUCCEEDED)

        callbacks.report_complete(result)
        return result

    def _failure(self, job: ProcessingJob, error: BaseException,
                 stage_times: Dict[str, float]) -> ProcessingResult:
        return ProcessingResult(
            job=job,
            success=False,
            error=error,
            error_message=f"{type(error).__name__}: {error}",
            stage_times=stage_times
        )

    def _run_stages(self, job: ProcessingJob, callbacks: ProcessingCallbacks,
                    stage_times: Dict[str, float]) -> Tuple[LoopSeamResult, Optional[float]]:
        # === STAGE 1: READ ===
        stage_start = time.time()
        callbacks.report_stage(JobStage.READING)
        buffer = self._loader.load(job.input_path)
        stage_times['read'] = time.time() - stage_start

        # === STAGE 2: ANALYZE ===
        stage_start = time.time()
        callbacks.report_stage(JobStage.ANALYZING)
        fade_samples = FadeSpec(job.fade_duration_ms).fade_samples(buffer.sample_rate,
                                                                   buffer.frame_count)
        tempo_bpm = self._resolve_tempo(job, buffer)
        analysis = self._analyzer.analyze(buffer, fade_samples, job.crossfade_mode, tempo_bpm)
        seam = LoopSeamResult.from_analysis(analysis, buffer.frame_count, buffer.sample_rate)
        stage_times['analyze'] = time.time() - stage_start

        # === STAGE 3: COMPOSITE ===
        stage_start = time.time()
        callbacks.report_stage(JobStage.COMPOSITING)
        blended = self._compositor.composite(buffer, analysis.offset_frames,
                                             analysis.fade_samples)
        del buffer
        stage_times['composite'] = time.time() - stage_start

        # === STAGE 4: ROTATE ===
        # Progress ticks once per finished channel
        stage_start = time.time()
        callbacks.report_stage(JobStage.ROTATING)
        channels = blended.channel_count
        mid = self._rotator.midpoint(blended.frame_count)
        for ch in range(channels):
            blended.samples[ch] = self._rotator.rotate_channel(blended.samples[ch], mid)
            callbacks.report_progress((ch + 1) / channels)
        stage_times['rotate'] = time.time() - stage_start

        # === STAGE 5: ENCODE ===
        stage_start = time.time()
        callbacks.report_stage(JobStage.ENCODING)
        self._encoder.write(blended, job.output_path, job.container_format)
        stage_times['encode'] = time.time() - stage_start

        return seam, tempo_bpm

    def _resolve_tempo(self, job: ProcessingJob, buffer: AudioBuffer) -> Optional[float]:
        """Tempo for the seam search: the job's, an estimate, or None."""
        if not job.crossfade_mode.uses_tempo:
            return None
        if job.tempo_bpm is not None:
            return job.tempo_bpm
        if not self.config.estimate_tempo:
            return None
        return self._estimator.estimate(buffer)

    def submit(self, job: ProcessingJob,
               callbacks: Optional[ProcessingCallbacks] = None) -> "Future[ProcessingResult]":
        """
        Run a job on the worker pool.

        Returns:
            Future resolving to the job's ProcessingResult
        """
        return self._get_executor().submit(self.process, job, callbacks)

    def process_batch(self, jobs: Sequence[ProcessingJob],
                      callbacks_for: Optional[Callable[[ProcessingJob], Optional[ProcessingCallbacks]]] = None
                      ) -> List[ProcessingResult]:
        """
        Run independent jobs concurrently and wait for all of them.

        Args:
            jobs: Jobs to run
            callbacks_for: Optional factory returning callbacks for each job

        Returns:
            Results in the same order as `jobs`
        """
        logger.info(f"Processing batch of {len(jobs)} job(s)")
        futures = [
            self.submit(job, callbacks_for(job) if callbacks_for else None)
            for job in jobs
        ]
        results = [future.result() for future in futures]

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Batch complete: {succeeded}/{len(results)} succeeded")
        return results

    # === Preview rendering ===

    def render_preview(self, source: Union[str, Path], fade_duration_ms: float,
                       crossfade_mode: Union[str, CrossfadeMode], cache: PreviewCache,
                       tempo_bpm: Optional[float] = None,
                       container_format: Union[str, ContainerFormat] = ContainerFormat.WAV,
                       callbacks: Optional[ProcessingCallbacks] = None) -> ProcessingResult:
        """
        Render a loop preview, reusing a cached render when one exists.

        Args:
            source: Input audio file
            fade_duration_ms: Fade duration in milliseconds
            crossfade_mode: Crossfade mode
            cache: Preview cache owned by the caller
            tempo_bpm: Optional tempo
            container_format: Preview container
            callbacks: Optional callbacks (on_complete fires for hits too)

        Returns:
            ProcessingResult pointing at the cached audio file
        """
        key = PreviewKey(
            source_path=Path(source),
            fade_duration_ms=fade_duration_ms,
            crossfade_mode=CrossfadeMode.parse(crossfade_mode),
            tempo_bpm=tempo_bpm,
            container_format=ContainerFormat.parse(container_format),
        )
        job = ProcessingJob(
            input_path=Path(source),
            output_path=cache.path_for(key),
            fade_duration_ms=fade_duration_ms,
            container_format=key.container_format,
            crossfade_mode=key.crossfade_mode,
            tempo_bpm=tempo_bpm,
        )

        cached = cache.get(key)
        if cached is not None:
            audio_path, center_time = cached
            logger.info(f"Preview cache hit: {Path(source).name}")
            result = ProcessingResult(job=job, success=True, output_path=audio_path,
                                      center_time_seconds=center_time, tempo_bpm=tempo_bpm)
            callbacks = callbacks or ProcessingCallbacks()
            callbacks.report_stage(JobStage.SUCCEEDED)
            callbacks.report_complete(result)
            return result

        result = self.process(job, callbacks)
        if result.success:
            cache.put(key, result.center_time_seconds)
        return result
