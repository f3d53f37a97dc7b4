from __future__ import annotations

import errno
import os
import shutil
import tempfile
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    """
    Write to a temp file in the same directory, then rename into place.
    """
    path = Path(path)
    ensure_dir(path.parent)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def move_file(src: Path, dst: Path) -> None:
    """
    Rename when possible; copy then delete the source across filesystems.
    """
    ensure_dir(Path(dst).parent)
    try:
        os.replace(src, dst)
        return
    except OSError as ex:
        if ex.errno not in {errno.EXDEV, errno.EPERM, errno.EACCES}:
            raise
    shutil.copyfile(src, dst)
    # the copy is in place; a stale source is only wasted space
    try:
        Path(src).unlink()
    except FileNotFoundError:
        pass
    except OSError:
        from audio_shield.utils.log import logger

        logger.warning("move_source_unlink_failed", src=str(src))
