from __future__ import annotations

import hashlib
import subprocess
from contextlib import suppress
from contextvars import ContextVar
from pathlib import Path

from audio_shield.config import get_settings
from audio_shield.utils.io import atomic_write_text, ensure_dir

_FORBIDDEN_FLAGS = {
    "-filter_script",
    "-filter_script:v",
    "-filter_script:a",
    "-filter_complex_script",
    "-stats_file",
}


class FFmpegError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stderr_tail: str = "",
        timed_out: bool = False,
    ) -> None:
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        self.timed_out = timed_out
        super().__init__(message)


_ffmpeg_log_dir: ContextVar[str | None] = ContextVar("ffmpeg_log_dir", default=None)


def set_ffmpeg_log_dir(path: str | Path | None) -> None:
    _ffmpeg_log_dir.set(str(path) if path else None)


def _write_ffmpeg_logs(argv: list[str], *, stderr: str | None) -> None:
    d = _ffmpeg_log_dir.get()
    if not d:
        return
    out_dir = Path(d)
    ensure_dir(out_dir)
    key = hashlib.sha256((" ".join(argv)).encode("utf-8", errors="replace")).hexdigest()[:16]
    atomic_write_text(out_dir / f"{key}.cmd.txt", " ".join(argv) + "\n")
    if stderr is not None:
        atomic_write_text(out_dir / f"{key}.stderr.log", stderr)


def _validate_args(argv: list[str]) -> None:
    for a in argv:
        if a in _FORBIDDEN_FLAGS:
            raise FFmpegError(f"Forbidden ffmpeg/ffprobe flag: {a}")


def _tail(s: str, n: int = 4000) -> str:
    s = str(s or "")
    if len(s) <= n:
        return s
    return s[-n:]


def _decode(out: str | bytes | None) -> str:
    if not out:
        return ""
    if isinstance(out, bytes):
        return out.decode("utf-8", errors="replace")
    return str(out)


def run_ffmpeg(
    argv: list[str],
    *,
    timeout_s: int | None = None,
) -> subprocess.CompletedProcess[str]:
    """
    Run an ffmpeg argv (list only, never a shell string).

    stderr is always captured: failures carry its tail so operators can tell
    codec/format problems apart from a killed or timed-out process.
    """
    _validate_args(argv)
    timeout = int(timeout_s) if timeout_s and int(timeout_s) > 0 else None
    try:
        p = subprocess.run(
            argv,
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as ex:
        stderr = _decode(ex.stderr)
        with suppress(Exception):
            _write_ffmpeg_logs(argv, stderr=stderr)
        raise FFmpegError(
            f"ffmpeg timed out after {timeout}s\nargv={argv}\nstderr_tail={_tail(stderr)}",
            stderr_tail=_tail(stderr),
            timed_out=True,
        ) from ex
    except subprocess.CalledProcessError as ex:
        stderr = _decode(ex.stderr)
        with suppress(Exception):
            _write_ffmpeg_logs(argv, stderr=stderr)
        raise FFmpegError(
            "ffmpeg failed "
            f"(exit={ex.returncode})\n"
            f"argv={argv}\n"
            f"stderr_tail={_tail(stderr)}",
            returncode=ex.returncode,
            stderr_tail=_tail(stderr),
        ) from ex
    except OSError as ex:
        # binary missing / not executable
        with suppress(Exception):
            _write_ffmpeg_logs(argv, stderr=str(ex))
        raise FFmpegError(f"ffmpeg failed: {ex} (argv={argv})") from ex
    with suppress(Exception):
        _write_ffmpeg_logs(argv, stderr=p.stderr)
    return p


def ffprobe_duration_seconds(path: Path, *, timeout_s: int = 20) -> float:
    """
    Container duration in seconds as reported by ffprobe (`format=duration`).
    """
    s = get_settings()
    argv = [
        str(s.ffprobe_bin),
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]
    _validate_args(argv)
    timeout = int(timeout_s) if timeout_s and int(timeout_s) > 0 else None
    try:
        p = subprocess.run(argv, check=True, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as ex:
        raise FFmpegError("ffprobe timed out", timed_out=True) from ex
    except subprocess.CalledProcessError as ex:
        stderr = _decode(ex.stderr)
        raise FFmpegError(
            f"ffprobe failed (exit={ex.returncode})\nstderr_tail={_tail(stderr)}",
            returncode=ex.returncode,
            stderr_tail=_tail(stderr),
        ) from ex
    except OSError as ex:
        raise FFmpegError(f"ffprobe failed: {ex}") from ex

    out = (p.stdout or "").strip()
    # some containers report nothing, others "N/A"
    try:
        return float(out.splitlines()[0]) if out else 0.0
    except ValueError as ex:
        raise FFmpegError(f"ffprobe returned an unparseable duration: {out!r}") from ex
