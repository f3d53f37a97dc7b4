from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from audio_shield.config import get_settings
from audio_shield.jobs.models import ShieldOptions
from audio_shield.media.probe import guard
from audio_shield.media.workspace import StagedInput
from audio_shield.stages.extract import extract_audio
from audio_shield.stages.recombine import recombine_video_audio
from audio_shield.stages.shield import ShieldStrategy, apply_shield
from audio_shield.utils.log import logger


@dataclass(frozen=True, slots=True)
class PipelineResult:
    output_path: Path
    processed_filename: str
    duration_s: float
    file_size: int
    strategy: str


def processed_filename_for(original_filename: str) -> str:
    stem = Path(original_filename).stem or "output"
    return f"{stem}{get_settings().processed_suffix}.mp4"


async def run_pipeline(
    staged: StagedInput,
    options: ShieldOptions,
    *,
    strategies: Sequence[ShieldStrategy] | None = None,
) -> PipelineResult:
    """
    Duration guard, then extract -> shield -> recombine, strictly in order.

    Each ffmpeg call runs in a worker thread so the event loop keeps serving
    other jobs and status queries while it waits.
    """
    t0 = time.perf_counter()
    duration = await guard(staged.input_path)

    logger.info("job_stage_start", stage="extract", step="1/3")
    await asyncio.to_thread(extract_audio, staged.input_path, staged.audio_path)

    logger.info(
        "job_stage_start",
        stage="shield",
        step="2/3",
        phase_inversion=options.phase_inversion,
        ultrasonic_noise=options.ultrasonic_noise,
    )
    strategy = await asyncio.to_thread(
        apply_shield,
        staged.audio_path,
        staged.shielded_audio_path,
        options,
        strategies=strategies,
    )

    logger.info("job_stage_start", stage="recombine", step="3/3", strategy=strategy)
    out = await asyncio.to_thread(
        recombine_video_audio, staged.input_path, staged.shielded_audio_path, staged.output_path
    )

    size = out.stat().st_size
    logger.info(
        "job_pipeline_done",
        output_mb=round(size / 1024 / 1024, 2),
        elapsed_s=round(time.perf_counter() - t0, 2),
    )
    return PipelineResult(
        output_path=out,
        processed_filename=processed_filename_for(staged.filename),
        duration_s=duration,
        file_size=size,
        strategy=strategy,
    )
