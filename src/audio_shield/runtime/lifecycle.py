from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field

from audio_shield.jobs.store import JobStore
from audio_shield.utils.log import logger

_draining = threading.Event()
_deadline_lock = threading.Lock()
_deadline_at: float | None = None


@dataclass(frozen=True, slots=True)
class DrainState:
    draining: bool
    deadline_at: float | None
    remaining_sec: int | None


def is_draining() -> bool:
    return _draining.is_set()


def drain_state() -> DrainState:
    with _deadline_lock:
        dl = _deadline_at
    if not is_draining():
        return DrainState(draining=False, deadline_at=dl, remaining_sec=None)
    if dl is None:
        return DrainState(draining=True, deadline_at=None, remaining_sec=None)
    rem = max(0, int(dl - time.time()))
    return DrainState(draining=True, deadline_at=dl, remaining_sec=rem)


def begin_draining(*, timeout_sec: int = 120) -> DrainState:
    """
    Enter draining mode:
    - stop accepting new jobs
    - allow in-flight jobs to finish until deadline
    """
    _draining.set()
    with _deadline_lock:
        global _deadline_at
        if _deadline_at is None:
            _deadline_at = time.time() + int(timeout_sec)
            logger.warning("drain_begin", timeout_sec=int(timeout_sec), deadline_at=_deadline_at)
    return drain_state()


def end_draining() -> None:
    """
    Exit draining mode (primarily for tests/dev).
    """
    _draining.clear()
    with _deadline_lock:
        global _deadline_at
        _deadline_at = None


async def sweep_forever(store: JobStore, *, interval_s: float) -> None:
    """Evict expired job records every `interval_s` for the life of the process."""
    interval = max(0.01, float(interval_s))
    while True:
        await asyncio.sleep(interval)
        try:
            store.sweep()
        except Exception as ex:
            # a broken sweep must not kill the loop; the next tick retries
            logger.error("job_store_sweep_failed", error=str(ex))


@dataclass(slots=True)
class LifecycleTasks:
    tasks: list[asyncio.Task] = field(default_factory=list)

    def create_task(self, coro, *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self.tasks.append(task)
        return task

    async def stop(self) -> None:
        for t in list(self.tasks):
            t.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()
