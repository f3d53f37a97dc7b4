from __future__ import annotations

from pathlib import Path

from audio_shield.config import get_settings
from audio_shield.errors import RecombineError
from audio_shield.utils.ffmpeg_safe import FFmpegError, run_ffmpeg


def recombine_video_audio(
    video_path: Path,
    audio_path: Path,
    out_path: Path,
    *,
    timeout_s: int | None = None,
) -> Path:
    """
    Mux the shielded audio under the original video.

    Video is stream-copied; audio is re-encoded to AAC; output stops at the
    shorter of the two streams.
    """
    s = get_settings()
    argv = [
        str(s.ffmpeg_bin),
        "-y",
        "-hide_banner",
        "-i",
        str(video_path),
        "-i",
        str(audio_path),
        "-c:v",
        "copy",
        "-c:a",
        "aac",
        "-b:a",
        str(s.audio_bitrate),
        "-map",
        "0:v:0",
        "-map",
        "1:a:0",
        "-shortest",
        str(out_path),
    ]
    try:
        run_ffmpeg(argv, timeout_s=s.timeout_recombine_s if timeout_s is None else timeout_s)
    except FFmpegError as ex:
        raise RecombineError(f"Recombining video and audio failed: {ex}") from ex
    if not Path(out_path).exists():
        raise RecombineError(f"ffmpeg reported success but wrote no output: {out_path}")
    return Path(out_path)
