from __future__ import annotations

import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from audio_shield.utils.ffmpeg_safe import FFmpegError


class FakeFFmpeg:
    """
    Stands in for `run_ffmpeg` in the stage modules.

    Every call is recorded; the last argv element (the output path) gets a
    few bytes written so downstream stages find a file. `fail_when` decides
    per call whether to raise FFmpegError instead.
    """

    def __init__(self, *, duration_s: float = 12.5) -> None:
        self.calls: list[list[str]] = []
        self.duration_s = duration_s
        self.probed: list[Path] = []
        self.fail_when: Callable[[list[str]], bool] = lambda argv: False

    def run(self, argv: list[str], *, timeout_s: int | None = None):
        self.calls.append(list(argv))
        if self.fail_when(argv):
            raise FFmpegError(
                "ffmpeg failed (exit=1)",
                returncode=1,
                stderr_tail="Error initializing complex filters.",
            )
        out = Path(argv[-1])
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(b"\x00" * 64)
        return subprocess.CompletedProcess(argv, 0, "", "")

    def probe(self, path: Path, *, timeout_s: int = 20) -> float:
        self.probed.append(Path(path))
        return float(self.duration_s)

    def calls_with(self, flag: str) -> list[list[str]]:
        return [c for c in self.calls if flag in c]

    def install(self, monkeypatch: pytest.MonkeyPatch) -> FakeFFmpeg:
        monkeypatch.setattr("audio_shield.stages.extract.run_ffmpeg", self.run)
        monkeypatch.setattr("audio_shield.stages.shield.run_ffmpeg", self.run)
        monkeypatch.setattr("audio_shield.stages.recombine.run_ffmpeg", self.run)
        monkeypatch.setattr("audio_shield.media.probe.ffprobe_duration_seconds", self.probe)
        return self


class FakeObjectStore:
    """In-memory ObjectStore: objects are bytes keyed by (bucket, path)."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.uploads: list[tuple[str, str, str]] = []
        self.signed: list[tuple[str, str, int]] = []

    def put(self, bucket: str, object_path: str, data: bytes) -> None:
        self.objects[(bucket, object_path)] = data

    def upload_file(self, bucket, object_path, local_path, *, content_type):
        self.objects[(bucket, object_path)] = Path(local_path).read_bytes()
        self.uploads.append((bucket, object_path, content_type))

    def create_signed_url(self, bucket, object_path, *, expires_in):
        self.signed.append((bucket, object_path, int(expires_in)))
        return f"https://storage.example/{bucket}/{object_path}?token=abc"

    def download_to(self, bucket, object_path, dest, *, max_bytes):
        from audio_shield.errors import StorageFailure

        data = self.objects.get((bucket, object_path))
        if data is None:
            raise StorageFailure(f"Object not found: {bucket}/{object_path}")
        if max_bytes > 0 and len(data) > max_bytes:
            raise StorageFailure(f"Object too large ({len(data)} bytes)")
        Path(dest).parent.mkdir(parents=True, exist_ok=True)
        Path(dest).write_bytes(data)
        return len(data)
