from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from audio_shield.audio.filters import OUT_LABEL, channel_graph, per_channel_chain
from audio_shield.config import get_settings
from audio_shield.errors import ShieldError
from audio_shield.jobs.models import ShieldOptions
from audio_shield.utils.ffmpeg_safe import FFmpegError, run_ffmpeg
from audio_shield.utils.log import logger


class ShieldStrategy(Protocol):
    name: str

    def apply(self, src: Path, dst: Path, options: ShieldOptions) -> None: ...


def _pcm_out(dst: Path) -> list[str]:
    s = get_settings()
    return [
        "-acodec",
        "pcm_s16le",
        "-ar",
        str(int(s.audio_sample_rate)),
        "-ac",
        "2",
        str(dst),
    ]


class ChannelGraphStrategy:
    """Partial right-channel inversion plus synthesized high-band noise."""

    name = "channel-graph"

    def argv(self, src: Path, dst: Path, options: ShieldOptions) -> list[str]:
        s = get_settings()
        graph = channel_graph(options, sample_rate=int(s.audio_sample_rate))
        return [
            str(s.ffmpeg_bin),
            "-y",
            "-hide_banner",
            "-i",
            str(src),
            "-filter_complex",
            graph,
            "-map",
            f"[{OUT_LABEL}]",
            *_pcm_out(dst),
        ]

    def apply(self, src: Path, dst: Path, options: ShieldOptions) -> None:
        run_ffmpeg(self.argv(src, dst, options), timeout_s=get_settings().timeout_shield_s)


class PerChannelFilterStrategy:
    """Binary right-channel flip and a high-shelf lift; no filter graph needed."""

    name = "per-channel-filter"

    def argv(self, src: Path, dst: Path, options: ShieldOptions) -> list[str]:
        s = get_settings()
        return [
            str(s.ffmpeg_bin),
            "-y",
            "-hide_banner",
            "-i",
            str(src),
            "-af",
            per_channel_chain(options),
            *_pcm_out(dst),
        ]

    def apply(self, src: Path, dst: Path, options: ShieldOptions) -> None:
        run_ffmpeg(self.argv(src, dst, options), timeout_s=get_settings().timeout_shield_s)


def default_strategies() -> list[ShieldStrategy]:
    return [ChannelGraphStrategy(), PerChannelFilterStrategy()]


def apply_shield(
    src: Path,
    dst: Path,
    options: ShieldOptions,
    *,
    strategies: Sequence[ShieldStrategy] | None = None,
) -> str:
    """
    Try each strategy in order; return the name of the one that worked.

    Raises ShieldError carrying every strategy's diagnostic when all fail.
    """
    chain = list(strategies) if strategies is not None else default_strategies()
    if not chain:
        raise ShieldError("No shield strategies configured")
    failures: dict[str, str] = {}
    for i, strategy in enumerate(chain):
        try:
            strategy.apply(Path(src), Path(dst), options)
        except FFmpegError as ex:
            failures[strategy.name] = str(ex)
            if i + 1 < len(chain):
                logger.warning(
                    "shield_fallback",
                    failed=strategy.name,
                    next=chain[i + 1].name,
                    returncode=ex.returncode,
                    timed_out=ex.timed_out,
                    stderr_tail=ex.stderr_tail[-800:],
                )
            # a rejected graph can leave a truncated file behind
            Path(dst).unlink(missing_ok=True)
            continue
        if failures:
            logger.info("shield_fallback_succeeded", strategy=strategy.name)
        return strategy.name
    detail = "\n".join(f"[{name}] {msg}" for name, msg in failures.items())
    raise ShieldError(f"All shield strategies failed:\n{detail}", failures=failures)
