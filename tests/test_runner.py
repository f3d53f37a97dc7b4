from __future__ import annotations

import asyncio
import errno
import os
import threading
import time
from datetime import timedelta
from pathlib import Path

import pytest

from audio_shield.config import get_settings
from audio_shield.errors import Busy, NotFound, NotReady, ValidationError
from audio_shield.jobs.models import PLACEHOLDER_OUTPUT, JobStatus, SourceRef
from audio_shield.jobs.runner import JobRunner, SubmitRequest
from audio_shield.jobs.store import JobStore
from audio_shield.media import workspace
from audio_shield.runtime import lifecycle
from tests._helpers.fake_ffmpeg import FakeFFmpeg, FakeObjectStore


def _local_req(tmp_path: Path, name: str = "clip.mp4", **kw) -> SubmitRequest:
    src = tmp_path / f"src-{time.monotonic_ns()}.bin"
    src.write_bytes(b"\x00" * 256)
    return SubmitRequest(source=SourceRef(local_path=src), original_filename=name, **kw)


async def _eventually(pred, *, timeout_s: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if pred():
            return True
        await asyncio.sleep(0.01)
    return bool(pred())


def test_submit_then_complete(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    FakeFFmpeg(duration_s=7.25).install(monkeypatch)

    async def _main() -> None:
        runner = JobRunner(JobStore())
        job_id = runner.submit(_local_req(tmp_path, "Talk 01.mp4", session_id="sess"))
        first = runner.status(job_id)
        assert first.status is JobStatus.PROCESSING
        assert first.processed_filename == PLACEHOLDER_OUTPUT
        assert first.download_reference is None

        await runner.wait(job_id)
        done = runner.status(job_id)
        assert done.status is JobStatus.COMPLETED
        assert done.processed_filename == "Talk_01_blindado.mp4"
        assert done.download_reference == f"/api/cache/{job_id}/download"
        assert done.duration_s == 7.25
        assert done.error is None
        assert runner.status(job_id) == done

        rec = runner.store.get(job_id)
        assert rec is not None and rec.local_only is True
        assert rec.session_id == "sess"
        assert rec.shield_strategy == "channel-graph"

        target = await runner.open_download(job_id)
        assert target.redirect_url is None
        assert target.path is not None and target.path.is_file()
        assert target.filename == "Talk_01_blindado.mp4"
        assert target.media_type == "video/mp4"

    asyncio.run(_main())


def test_failed_job_records_error(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeFFmpeg(duration_s=900.0).install(monkeypatch)

    async def _main() -> None:
        runner = JobRunner(JobStore())
        job_id = runner.submit(_local_req(tmp_path))
        await runner.wait(job_id)
        v = runner.status(job_id)
        assert v.status is JobStatus.FAILED
        assert v.error is not None and v.error.startswith("DurationExceeded: Media too long")
        assert v.processed_filename == PLACEHOLDER_OUTPUT
        assert v.download_reference is None
        assert v.duration_s is None
        with pytest.raises(NotReady):
            await runner.open_download(job_id)

    asyncio.run(_main())
    assert fake.calls == []


def test_validation_happens_before_any_record(tmp_path: Path) -> None:
    async def _main() -> None:
        store = JobStore()
        runner = JobRunner(store, object_store=FakeObjectStore())
        with pytest.raises(ValidationError):
            runner.submit(SubmitRequest(source=SourceRef(bucket="", object_path="x.mp4"), original_filename=""))
        with pytest.raises(ValidationError):
            runner.submit(_local_req(tmp_path, phase_inversion="loud"))
        assert len(store) == 0

    asyncio.run(_main())


def test_remote_source_requires_storage() -> None:
    async def _main() -> None:
        runner = JobRunner(JobStore())
        with pytest.raises(ValidationError):
            runner.submit(
                SubmitRequest(
                    source=SourceRef(bucket="videos", object_path="a/b.mp4"),
                    original_filename="b.mp4",
                )
            )

    asyncio.run(_main())


def test_unknown_job_is_not_found() -> None:
    async def _main() -> None:
        runner = JobRunner(JobStore())
        with pytest.raises(NotFound):
            runner.status("missing")
        with pytest.raises(NotFound):
            await runner.open_download("missing")

    asyncio.run(_main())


def test_remote_source_is_fetched_and_output_uploaded(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv("LOCAL_ONLY", "0")
    get_settings.cache_clear()
    FakeFFmpeg().install(monkeypatch)
    objects = FakeObjectStore()
    objects.put("videos", "user/Entrevista Final.mp4", b"\x00" * 512)

    async def _main() -> None:
        runner = JobRunner(JobStore(), object_store=objects)
        job_id = runner.submit(
            SubmitRequest(
                source=SourceRef(bucket="videos", object_path="user/Entrevista Final.mp4"),
                original_filename="Entrevista Final.mp4",
                session_id="s-1",
            )
        )
        await runner.wait(job_id)
        rec = runner.store.get(job_id)
        assert rec is not None
        assert rec.status is JobStatus.COMPLETED, rec.error
        assert rec.local_only is False
        bucket, object_path, ctype = objects.uploads[0]
        assert bucket == "processed"
        assert object_path.startswith("s-1/")
        assert object_path.endswith("_Entrevista_Final_blindado.mp4")
        assert ctype == "video/mp4"
        assert rec.output_location == f"processed/{object_path}"

        target = await runner.open_download(job_id)
        assert target.redirect_url is not None
        assert objects.signed[-1] == ("processed", object_path, 3600)

    asyncio.run(_main())
    uploads = Path(get_settings().public.resolved_uploads_dir())
    assert list(uploads.glob("*")) == []


def test_remote_download_failure_fails_job(tmp_path: Path) -> None:
    async def _main() -> None:
        runner = JobRunner(JobStore(), object_store=FakeObjectStore())
        job_id = runner.submit(
            SubmitRequest(
                source=SourceRef(bucket="videos", object_path="nope.mp4"),
                original_filename="nope.mp4",
            )
        )
        await runner.wait(job_id)
        v = runner.status(job_id)
        assert v.status is JobStatus.FAILED
        assert v.error is not None and v.error.startswith("StorageFailure:")

    asyncio.run(_main())


def test_pending_ceiling_rejects_with_busy(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MAX_PENDING_JOBS", "1")
    get_settings.cache_clear()
    FakeFFmpeg().install(monkeypatch)

    async def _main() -> None:
        runner = JobRunner(JobStore())
        first = runner.submit(_local_req(tmp_path))
        with pytest.raises(Busy):
            runner.submit(_local_req(tmp_path))
        await runner.wait(first)
        runner.submit(_local_req(tmp_path))

    asyncio.run(_main())


def test_draining_rejects_with_busy(tmp_path: Path) -> None:
    async def _main() -> None:
        runner = JobRunner(JobStore())
        lifecycle.begin_draining(timeout_sec=5)
        with pytest.raises(Busy):
            runner.submit(_local_req(tmp_path))

    asyncio.run(_main())


def test_concurrency_ceiling(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MAX_CONCURRENT_JOBS", "1")
    get_settings.cache_clear()
    fake = FakeFFmpeg()
    lock = threading.Lock()
    active = {"now": 0, "max": 0}
    real_run = fake.run

    def _slow_run(argv, *, timeout_s=None):
        with lock:
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
        try:
            time.sleep(0.02)
            return real_run(argv, timeout_s=timeout_s)
        finally:
            with lock:
                active["now"] -= 1

    fake.run = _slow_run  # type: ignore[method-assign]
    fake.install(monkeypatch)

    async def _main() -> None:
        runner = JobRunner(JobStore())
        ids = [runner.submit(_local_req(tmp_path)) for _ in range(3)]
        for jid in ids:
            await runner.wait(jid)
            assert runner.status(jid).status is JobStatus.COMPLETED

    asyncio.run(_main())
    assert active["max"] == 1


def test_failed_workspace_is_cleaned_after_grace(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv("CLEANUP_GRACE_S", "0")
    get_settings.cache_clear()
    fake = FakeFFmpeg().install(monkeypatch)
    fake.fail_when = lambda argv: "-vn" in argv

    async def _main() -> None:
        runner = JobRunner(JobStore())
        job_id = runner.submit(_local_req(tmp_path))
        await runner.wait(job_id)
        rec = runner.store.get(job_id)
        assert rec is not None and rec.work_dir
        assert rec.status is JobStatus.FAILED
        assert rec.error is not None and rec.error.startswith("ExtractError:")
        assert await _eventually(lambda: not Path(rec.work_dir).exists())

    asyncio.run(_main())


def test_completed_local_output_is_kept_until_expiry(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv("CLEANUP_GRACE_S", "0")
    get_settings.cache_clear()
    FakeFFmpeg().install(monkeypatch)

    async def _main() -> None:
        runner = JobRunner(JobStore())
        job_id = runner.submit(_local_req(tmp_path))
        await runner.wait(job_id)
        await asyncio.sleep(0.05)
        rec = runner.store.get(job_id)
        assert rec is not None and rec.work_dir
        assert Path(rec.work_dir).exists()
        assert len(runner.cleanup) == 1
        assert await runner.cleanup.run_now() == 1
        assert not Path(rec.work_dir).exists()

    asyncio.run(_main())


def test_expired_job_disappears_after_sweep(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    FakeFFmpeg().install(monkeypatch)

    async def _main() -> None:
        runner = JobRunner(JobStore())
        job_id = runner.submit(_local_req(tmp_path))
        await runner.wait(job_id)
        rec = runner.store.get(job_id)
        assert rec is not None
        assert runner.store.sweep(now=rec.expires_at + timedelta(seconds=1)) == 1
        with pytest.raises(NotFound):
            runner.status(job_id)

    asyncio.run(_main())


def test_keep_source_leaves_input_in_place(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    FakeFFmpeg().install(monkeypatch)
    req = _local_req(tmp_path, keep_source=True)

    async def _main() -> None:
        runner = JobRunner(JobStore())
        job_id = runner.submit(req)
        await runner.wait(job_id)
        assert runner.status(job_id).status is JobStatus.COMPLETED

    asyncio.run(_main())
    assert req.source.local_path is not None and req.source.local_path.exists()


def test_job_completes_on_fallback_strategy(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeFFmpeg().install(monkeypatch)
    fake.fail_when = lambda argv: "-filter_complex" in argv

    async def _main() -> None:
        runner = JobRunner(JobStore())
        job_id = runner.submit(_local_req(tmp_path, "talk.mp4"))
        await runner.wait(job_id)
        v = runner.status(job_id)
        assert v.status is JobStatus.COMPLETED
        assert v.processed_filename == "talk_blindado.mp4"
        rec = runner.store.get(job_id)
        assert rec is not None and rec.shield_strategy == "per-channel-filter"

    asyncio.run(_main())


def test_job_fails_with_shield_error_when_every_strategy_fails(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    fake = FakeFFmpeg().install(monkeypatch)
    fake.fail_when = lambda argv: "-filter_complex" in argv or "-af" in argv

    async def _main() -> None:
        runner = JobRunner(JobStore())
        job_id = runner.submit(_local_req(tmp_path))
        await runner.wait(job_id)
        v = runner.status(job_id)
        assert v.status is JobStatus.FAILED
        assert v.error is not None and v.error.startswith("ShieldError:")
        assert v.download_reference is None

    asyncio.run(_main())
    # recombine never ran
    assert len(fake.calls) == 3


def test_staging_failure_leaves_no_workspace(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def _enospc(src, dst):
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(workspace, "move_file", _enospc)
    FakeFFmpeg().install(monkeypatch)

    async def _main() -> None:
        runner = JobRunner(JobStore())
        job_id = runner.submit(_local_req(tmp_path))
        await runner.wait(job_id)
        v = runner.status(job_id)
        assert v.status is JobStatus.FAILED
        assert v.error is not None and v.error.startswith("StagingError:")

    asyncio.run(_main())
    root = Path(os.environ["WORK_ROOT"])
    assert list(root.glob("audio-shield-*")) == []
