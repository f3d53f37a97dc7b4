from __future__ import annotations

import re
import shutil
import unicodedata
import uuid
from dataclasses import dataclass
from pathlib import Path

from audio_shield.config import get_settings
from audio_shield.errors import StagingError
from audio_shield.utils.io import move_file
from audio_shield.utils.log import logger

WORKSPACE_PREFIX = "audio-shield-"
DEFAULT_EXT = ".mp4"

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]")
_UNDERSCORES_RE = re.compile(r"_+")


def safe_filename(name: str) -> str:
    """
    Filesystem/URL-safe version of a user-supplied filename.

    - NFD-normalize and drop combining marks (diacritics)
    - anything outside [A-Za-z0-9._-] becomes "_"
    - runs of "_" collapse to one
    """
    t = unicodedata.normalize("NFD", str(name or ""))
    t = "".join(ch for ch in t if not unicodedata.combining(ch))
    t = _UNSAFE_RE.sub("_", t)
    return _UNDERSCORES_RE.sub("_", t)


def file_extension(name: str) -> str:
    ext = Path(name).suffix
    return ext if ext and ext != "." else DEFAULT_EXT


@dataclass(frozen=True, slots=True)
class StagedInput:
    work_dir: Path
    input_path: Path
    filename: str

    @property
    def audio_path(self) -> Path:
        return self.work_dir / "audio.wav"

    @property
    def shielded_audio_path(self) -> Path:
        return self.work_dir / "processed_audio.wav"

    @property
    def output_path(self) -> Path:
        return self.work_dir / "output.mp4"

    @property
    def logs_dir(self) -> Path:
        return self.work_dir / "logs"


def new_workspace(root: Path | None = None) -> Path:
    base = Path(root) if root is not None else Path(get_settings().work_root)
    work_dir = (base / f"{WORKSPACE_PREFIX}{uuid.uuid4()}").resolve()
    try:
        work_dir.mkdir(parents=True, exist_ok=False)
    except OSError as ex:
        raise StagingError(f"Could not create workspace {work_dir}: {ex}") from ex
    return work_dir


def stage(source_path: Path, original_filename: str, *, root: Path | None = None) -> StagedInput:
    """
    Move `source_path` into a fresh per-job workspace as `input<ext>`.

    The extension is kept because ffprobe/ffmpeg pick demuxers by it for some
    containers.
    """
    src = Path(source_path)
    if not src.is_file():
        raise StagingError(f"Source file not found: {src}")
    filename = safe_filename(original_filename) or f"input{DEFAULT_EXT}"
    work_dir = new_workspace(root)
    input_path = work_dir / f"input{file_extension(filename)}"
    try:
        move_file(src, input_path)
    except OSError as ex:
        shutil.rmtree(work_dir, ignore_errors=True)
        raise StagingError(f"Could not place {src} into {work_dir}: {ex}") from ex
    logger.info(
        "workspace_staged",
        work_dir=str(work_dir),
        input_path=str(input_path),
        bytes=input_path.stat().st_size,
    )
    return StagedInput(work_dir=work_dir, input_path=input_path, filename=filename)
