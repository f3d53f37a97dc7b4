from __future__ import annotations

from pathlib import Path

from audio_shield.config import get_settings
from audio_shield.errors import ExtractError
from audio_shield.utils.ffmpeg_safe import FFmpegError, run_ffmpeg


def extract_audio(src: Path, dst: Path, *, timeout_s: int | None = None) -> Path:
    """
    Demux the audio track to 16-bit PCM WAV, stereo, at the configured rate.
    """
    s = get_settings()
    argv = [
        str(s.ffmpeg_bin),
        "-y",
        "-hide_banner",
        "-i",
        str(src),
        "-vn",
        "-acodec",
        "pcm_s16le",
        "-ar",
        str(int(s.audio_sample_rate)),
        "-ac",
        "2",
        str(dst),
    ]
    try:
        run_ffmpeg(argv, timeout_s=s.timeout_extract_s if timeout_s is None else timeout_s)
    except FFmpegError as ex:
        raise ExtractError(f"Audio extraction failed: {ex}") from ex
    return Path(dst)
