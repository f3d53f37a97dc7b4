from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

from audio_shield.utils.log import logger


def remove_workspace(work_dir: Path) -> bool:
    """
    Delete a job workspace. Idempotent; never raises.

    Returns True when the directory is gone afterwards.
    """
    p = Path(work_dir)
    if not p.exists():
        return True
    shutil.rmtree(p, ignore_errors=True)
    if p.exists():
        logger.warning("workspace_cleanup_failed", work_dir=str(p))
        return False
    logger.info("workspace_removed", work_dir=str(p))
    return True


class CleanupScheduler:
    """
    One-shot deferred deletion of job workspaces.

    Must be used from a running event loop. Each scheduled directory gets a
    single task; re-scheduling the same directory replaces the earlier timer.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def pending(self) -> list[str]:
        return sorted(self._pending)

    def schedule(self, work_dir: Path, *, after_s: float) -> asyncio.Task:
        key = str(Path(work_dir).resolve())
        prev = self._pending.pop(key, None)
        if prev is not None:
            prev.cancel()
        delay = max(0.0, float(after_s))
        task = asyncio.get_running_loop().create_task(
            self._run(key, delay), name=f"cleanup:{Path(key).name}"
        )
        self._pending[key] = task
        logger.info("workspace_cleanup_scheduled", work_dir=key, after_s=round(delay, 1))
        return task

    async def _run(self, key: str, delay: float) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            await asyncio.to_thread(remove_workspace, Path(key))
        finally:
            cur = self._pending.get(key)
            if cur is asyncio.current_task():
                self._pending.pop(key, None)

    async def run_now(self) -> int:
        """Cancel every timer and delete all pending workspaces immediately."""
        keys = list(self._pending)
        await self.cancel_all()
        for key in keys:
            await asyncio.to_thread(remove_workspace, Path(key))
        return len(keys)

    async def cancel_all(self) -> None:
        tasks = list(self._pending.values())
        self._pending.clear()
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
