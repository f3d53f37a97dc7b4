from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

from audio_shield.jobs.models import JobRecord
from audio_shield.jobs.store import JobStore
from audio_shield.ops.cleanup import CleanupScheduler, remove_workspace
from audio_shield.runtime import lifecycle


def _workspace(tmp_path: Path, name: str = "ws") -> Path:
    d = tmp_path / name
    (d / "logs").mkdir(parents=True)
    (d / "input.mp4").write_bytes(b"x")
    return d


def test_remove_workspace_is_idempotent(tmp_path: Path) -> None:
    d = _workspace(tmp_path)
    assert remove_workspace(d) is True
    assert not d.exists()
    assert remove_workspace(d) is True


def test_schedule_deletes_after_delay(tmp_path: Path) -> None:
    d = _workspace(tmp_path)

    async def _main() -> None:
        sched = CleanupScheduler()
        task = sched.schedule(d, after_s=0.01)
        assert len(sched) == 1
        await task
        assert not d.exists()
        assert len(sched) == 0

    asyncio.run(_main())


def test_reschedule_replaces_timer(tmp_path: Path) -> None:
    d = _workspace(tmp_path)

    async def _main() -> None:
        sched = CleanupScheduler()
        first = sched.schedule(d, after_s=60)
        second = sched.schedule(d, after_s=0)
        await second
        assert first.cancelled()
        assert not d.exists()

    asyncio.run(_main())


def test_cancel_all_keeps_files(tmp_path: Path) -> None:
    d = _workspace(tmp_path)

    async def _main() -> None:
        sched = CleanupScheduler()
        sched.schedule(d, after_s=60)
        await sched.cancel_all()
        assert len(sched) == 0

    asyncio.run(_main())
    assert d.exists()


def test_run_now_deletes_pending(tmp_path: Path) -> None:
    a = _workspace(tmp_path, "a")
    b = _workspace(tmp_path, "b")

    async def _main() -> int:
        sched = CleanupScheduler()
        sched.schedule(a, after_s=3600)
        sched.schedule(b, after_s=3600)
        assert sched.pending() == sorted([str(a.resolve()), str(b.resolve())])
        return await sched.run_now()

    assert asyncio.run(_main()) == 2
    assert not a.exists() and not b.exists()


def test_missing_directory_is_not_an_error(tmp_path: Path) -> None:
    async def _main() -> None:
        sched = CleanupScheduler()
        await sched.schedule(tmp_path / "never-existed", after_s=0)

    asyncio.run(_main())


def test_sweeper_loop_evicts_expired_records() -> None:
    store = JobStore()
    rec = JobRecord.new(original_filename="a.mp4", ttl=timedelta(microseconds=1))
    store.create(rec.id, rec)

    async def _main() -> None:
        tasks = lifecycle.LifecycleTasks()
        tasks.create_task(lifecycle.sweep_forever(store, interval_s=0.01), name="sweeper")
        for _ in range(200):
            if store.get(rec.id) is None:
                break
            await asyncio.sleep(0.01)
        await tasks.stop()

    asyncio.run(_main())
    assert store.get(rec.id) is None


def test_drain_state() -> None:
    assert lifecycle.drain_state().draining is False
    st = lifecycle.begin_draining(timeout_sec=10)
    assert st.draining is True
    assert st.remaining_sec is not None and 0 <= st.remaining_sec <= 10
    lifecycle.end_draining()
    assert lifecycle.is_draining() is False
