from __future__ import annotations

import asyncio
import math
from pathlib import Path

from audio_shield.config import get_settings
from audio_shield.errors import DurationExceeded, ProbeError
from audio_shield.utils.ffmpeg_safe import FFmpegError, ffprobe_duration_seconds
from audio_shield.utils.log import logger


def probe_duration(input_path: Path, *, timeout_s: int | None = None) -> float:
    s = get_settings()
    t = int(s.timeout_probe_s) if timeout_s is None else int(timeout_s)
    try:
        duration = ffprobe_duration_seconds(Path(input_path), timeout_s=t)
    except FFmpegError as ex:
        raise ProbeError(f"Could not inspect media: {ex}") from ex
    if not math.isfinite(duration):
        raise ProbeError(f"Container reports a non-finite duration: {input_path}")
    if duration <= 0:
        raise ProbeError(f"Container reports no duration: {input_path}")
    return duration


def check_duration(duration_s: float, *, max_s: float | None = None) -> float:
    limit = float(get_settings().max_media_duration_s if max_s is None else max_s)
    if float(duration_s) > limit:
        raise DurationExceeded(duration_s, limit)
    return float(duration_s)


async def guard(input_path: Path) -> float:
    """Probe, then enforce the duration ceiling before any transform runs."""
    duration = await asyncio.to_thread(probe_duration, input_path)
    logger.info(
        "media_probed",
        duration_s=round(duration, 3),
        duration_min=round(duration / 60.0, 1),
    )
    return check_duration(duration)
