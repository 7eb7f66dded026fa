#!/usr/bin/env python3
"""
Export Loops - Batch-convert recordings into seamless loops

Each input is processed independently on a worker pool; one failing file
does not stop the others.

Usage:
  python tools/export_loops.py <input>... --output-dir <dir> [options]

  # Beat-aligned AIFF loops at a known tempo:
  python tools/export_loops.py pad.wav drums.aif --output-dir loops \
    --mode beat_aligned --bpm 120 --format aiff
"""

import sys
import logging
import threading
from pathlib import Path
from typing import Dict, List

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from loop_engine import (LoopPipeline, PipelineConfig, ProcessingJob,
                         ProcessingCallbacks, ContainerFormat, CrossfadeMode)
from loop_engine.formats import is_importable
from loop_engine.utils import format_duration
import logging_config

logger = logging.getLogger("seamloop.export_loops")


class BatchProgress:
    """Aggregate progress across jobs: the mean of per-file fractions."""

    def __init__(self, inputs: List[Path]):
        self._lock = threading.Lock()
        self._progress: Dict[Path, float] = {path: 0.0 for path in inputs}

    def update(self, path: Path, fraction: float) -> float:
        with self._lock:
            self._progress[path] = fraction
            return sum(self._progress.values()) / len(self._progress)

    def callbacks_for(self, job: ProcessingJob) -> ProcessingCallbacks:
        def on_progress(fraction: float):
            overall = self.update(job.input_path, fraction)
            print(f"  [{overall * 100:5.1f}%] {job.input_path.name}: {fraction * 100:.0f}%")
        return ProcessingCallbacks(on_progress=on_progress)


def build_jobs(inputs: List[Path], output_dir: Path, fade_ms: float,
               container_format: ContainerFormat, mode: CrossfadeMode,
               bpm=None) -> List[ProcessingJob]:
    """One job per input; output is the input stem with the format's extension."""
    return [
        ProcessingJob(
            input_path=path,
            output_path=output_dir / f"{path.stem}{container_format.extension}",
            fade_duration_ms=fade_ms,
            container_format=container_format,
            crossfade_mode=mode,
            tempo_bpm=bpm,
        )
        for path in inputs
    ]


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(
        description="Export seamless loops from audio recordings"
    )
    parser.add_argument("inputs", nargs="+", help="Input audio files (.wav, .aiff, .aif, .mp3)")
    parser.add_argument("--output-dir", "-o", required=True, help="Directory for exported loops")
    parser.add_argument("--fade-ms", type=float, default=30000.0,
                        help="Crossfade duration in milliseconds (default: 30000)")
    parser.add_argument("--format", default="wav", choices=["wav", "aiff"],
                        help="Output container (default: wav)")
    parser.add_argument("--mode", default="manual",
                        choices=[m.value for m in CrossfadeMode],
                        help="Seam search mode (default: manual)")
    parser.add_argument("--bpm", type=float, default=None,
                        help="Tempo for beat_aligned / rhythmic_bpm modes")
    parser.add_argument("--estimate-bpm", action="store_true",
                        help="Estimate tempo per file when --bpm is not given")
    parser.add_argument("--workers", type=int, default=4,
                        help="Concurrent jobs (default: 4)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: INFO)")

    args = parser.parse_args(argv)
    logging_config.configure(args.log_level)

    if args.fade_ms <= 0:
        parser.error("--fade-ms must be positive")
    if args.bpm is not None and args.bpm <= 0:
        parser.error("--bpm must be positive")

    inputs = []
    for name in args.inputs:
        path = Path(name)
        if not is_importable(path):
            logger.warning(f"Skipping {path.name}: unsupported file type '{path.suffix}'")
            continue
        inputs.append(path)

    if not inputs:
        print("Error: no importable input files")
        return 1

    output_dir = Path(args.output_dir)
    container_format = ContainerFormat.parse(args.format)
    mode = CrossfadeMode.parse(args.mode)

    config = PipelineConfig(max_workers=max(1, args.workers), estimate_tempo=args.estimate_bpm)

    with LoopPipeline(config) as pipeline:
        # Without --bpm, tempo modes estimate during analysis when --estimate-bpm is set
        jobs = build_jobs(inputs, output_dir, args.fade_ms, container_format, mode, args.bpm)

        progress = BatchProgress(inputs)
        results = pipeline.process_batch(jobs, callbacks_for=progress.callbacks_for)

    # Print summary
    print("\n" + "=" * 60)
    print("LOOP EXPORT SUMMARY")
    print("=" * 60)
    failed = 0
    for result in results:
        name = result.job.input_path.name
        if result.success:
            tempo = f", {result.tempo_bpm:.1f} BPM" if result.tempo_bpm else ""
            print(f"  ✅ {name} -> {result.output_path} "
                  f"(seam at {format_duration(result.center_time_seconds)} / "
                  f"{result.center_time_seconds:.3f}s{tempo})")
        else:
            failed += 1
            print(f"  ❌ {name}: {result.error_message}")
    print(f"\n{len(results) - failed}/{len(results)} exported to {output_dir}")
    print("=" * 60)

    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
