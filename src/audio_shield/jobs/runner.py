from __future__ import annotations

import asyncio
import contextlib
import math
import shutil
import tempfile
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from audio_shield.config import get_settings
from audio_shield.errors import (
    Busy,
    InvalidTransition,
    MissingArtifact,
    NotFound,
    NotReady,
    StagingError,
    StorageFailure,
    ValidationError,
    describe,
)
from audio_shield.jobs.models import (
    JobRecord,
    JobStatus,
    ShieldOptions,
    SourceRef,
    now_utc,
)
from audio_shield.jobs.pipeline import PipelineResult, run_pipeline
from audio_shield.jobs.store import JobStore
from audio_shield.media.workspace import StagedInput, safe_filename, stage
from audio_shield.ops.cleanup import CleanupScheduler
from audio_shield.runtime import lifecycle
from audio_shield.stages.shield import ShieldStrategy
from audio_shield.storage.object_store import ObjectStore
from audio_shield.utils.ffmpeg_safe import set_ffmpeg_log_dir
from audio_shield.utils.log import logger, set_job_context

VIDEO_MEDIA_TYPE = "video/mp4"


def _percent(name: str, value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number between 0 and 100")
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number between 0 and 100") from None
    if math.isnan(v):
        raise ValidationError(f"{name} must be a number between 0 and 100")
    return v


@dataclass(frozen=True, slots=True)
class SubmitRequest:
    source: SourceRef
    original_filename: str
    session_id: str | None = None
    phase_inversion: Any = None
    ultrasonic_noise: Any = None
    # copy (rather than move) a local source into the workspace
    keep_source: bool = False

    def validated(self) -> tuple[str, ShieldOptions]:
        src = self.source
        if src.local_path is None and not (src.bucket.strip() and src.object_path.strip()):
            raise ValidationError("Required fields: bucket, path")
        name = Path(str(self.original_filename or "").strip()).name
        if not name:
            if src.local_path is not None:
                name = Path(src.local_path).name
            else:
                name = Path(src.object_path).name
        if not name:
            raise ValidationError("original filename is required")
        options = ShieldOptions.from_raw(
            _percent("phaseInversion", self.phase_inversion),
            _percent("ultrasonicNoise", self.ultrasonic_noise),
        )
        return name, options


@dataclass(frozen=True, slots=True)
class JobStatusView:
    status: JobStatus
    original_filename: str
    processed_filename: str
    expires_at: datetime
    download_reference: str | None = None
    error: str | None = None
    duration_s: float | None = None

    @classmethod
    def of(cls, rec: JobRecord) -> JobStatusView:
        completed = rec.status is JobStatus.COMPLETED
        return cls(
            status=rec.status,
            original_filename=rec.original_filename,
            processed_filename=rec.processed_filename,
            expires_at=rec.expires_at,
            download_reference=download_reference(rec.id) if completed else None,
            error=rec.error if rec.status is JobStatus.FAILED else None,
            duration_s=rec.duration_s if completed else None,
        )


@dataclass(frozen=True, slots=True)
class DownloadTarget:
    filename: str
    media_type: str = VIDEO_MEDIA_TYPE
    path: Path | None = None
    size: int | None = None
    redirect_url: str | None = None


def download_reference(job_id: str) -> str:
    return f"/api/cache/{job_id}/download"


@dataclass(slots=True)
class _Published:
    location: str
    local_only: bool


@dataclass(slots=True)
class JobRunner:
    """
    Accepts submissions and runs each job as its own asyncio task.

    The caller gets a job id back immediately; the record is already visible
    as `processing`. Everything that goes wrong inside the task ends up on
    the record as `failed`, never as an exception to the submitter.
    """

    store: JobStore
    object_store: ObjectStore | None = None
    cleanup: CleanupScheduler = field(default_factory=CleanupScheduler)
    strategies: Sequence[ShieldStrategy] | None = None
    _tasks: dict[str, asyncio.Task] = field(default_factory=dict, init=False)
    _sem: asyncio.Semaphore | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        n = int(get_settings().max_concurrent_jobs)
        self._sem = asyncio.Semaphore(n) if n > 0 else None

    # --- submission ---

    def active_jobs(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    def submit(self, req: SubmitRequest) -> str:
        """Validate, create the record, spawn the job task. Needs a running loop."""
        s = get_settings()
        name, options = req.validated()
        if req.source.remote and self.object_store is None:
            raise ValidationError("Object storage is not configured; submit a local file")
        if lifecycle.is_draining():
            raise Busy("Server is shutting down; not accepting new jobs")
        max_pending = int(s.max_pending_jobs)
        if max_pending > 0 and self.active_jobs() >= max_pending:
            raise Busy(f"Too many jobs in progress ({max_pending}); retry later")

        loop = asyncio.get_running_loop()
        rec = JobRecord.new(
            original_filename=name,
            session_id=(req.session_id or "").strip() or None,
            ttl=timedelta(hours=float(s.job_ttl_hours)),
            options=options,
        )
        self.store.create(rec.id, rec)
        task = loop.create_task(self._run(rec.id, rec.session_id, req, options), name=f"job:{rec.id}")
        self._tasks[rec.id] = task
        task.add_done_callback(lambda _t, jid=rec.id: self._tasks.pop(jid, None))
        logger.info(
            "job_submitted",
            job_id=rec.id,
            session_id=rec.session_id,
            source=req.source.describe(),
            phase_inversion=options.phase_inversion,
            ultrasonic_noise=options.ultrasonic_noise,
        )
        return rec.id

    async def wait(self, job_id: str) -> None:
        """Wait for a job's task to finish (no-op if it already has)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def drain(self, *, timeout_s: float | None = None) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        _done, pending = await asyncio.wait(tasks, timeout=timeout_s)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # --- the job task ---

    def _slot(self):
        return self._sem if self._sem is not None else contextlib.nullcontext()

    async def _run(
        self, job_id: str, session_id: str, req: SubmitRequest, options: ShieldOptions
    ) -> None:
        set_job_context(job_id, session_id)
        s = get_settings()
        work_dir: Path | None = None
        terminal: JobRecord | None = None
        try:
            async with self._slot():
                staged = await self._fetch_and_stage(job_id, req)
                work_dir = staged.work_dir
                if bool(s.ffmpeg_job_logs):
                    set_ffmpeg_log_dir(staged.logs_dir)
                self.store.update(
                    job_id,
                    status=JobStatus.PROCESSING,
                    original_filename=staged.filename,
                    work_dir=str(staged.work_dir),
                )
                result = await run_pipeline(staged, options, strategies=self.strategies)
                published = await self._publish(session_id, result)
                terminal = self.store.update(
                    job_id,
                    status=JobStatus.COMPLETED,
                    processed_filename=result.processed_filename,
                    output_location=published.location,
                    local_only=published.local_only,
                    duration_s=result.duration_s,
                    file_size=result.file_size,
                    shield_strategy=result.strategy,
                )
                logger.info(
                    "job_completed",
                    duration_s=round(result.duration_s, 3),
                    strategy=result.strategy,
                    local_only=published.local_only,
                )
        except asyncio.CancelledError:
            terminal = self._fail(job_id, "Interrupted: server shutting down")
            raise
        except Exception as ex:
            logger.error("job_failed", error=describe(ex), error_type=type(ex).__name__)
            terminal = self._fail(job_id, describe(ex))
        finally:
            set_ffmpeg_log_dir(None)
            if work_dir is not None:
                self._arm_cleanup(work_dir, terminal)

    def _fail(self, job_id: str, message: str) -> JobRecord | None:
        try:
            return self.store.update(job_id, status=JobStatus.FAILED, error=message)
        except (NotFound, InvalidTransition) as ex:
            # swept or already terminal; nothing left to record on
            logger.warning("job_fail_record_skipped", reason=str(ex))
            return None

    async def _fetch_and_stage(self, job_id: str, req: SubmitRequest) -> StagedInput:
        rec = self.store.get(job_id)
        name = rec.original_filename if rec is not None else req.original_filename
        src = req.source
        if src.local_path is not None:
            return await asyncio.to_thread(
                _stage_local, Path(src.local_path), name, copy=req.keep_source
            )

        if self.object_store is None:
            raise StorageFailure("Object storage is not configured")
        s = get_settings()
        uploads = s.public.resolved_uploads_dir()
        tmp = uploads / f"{uuid.uuid4()}_{safe_filename(name)}"
        try:
            await asyncio.to_thread(
                self.object_store.download_to,
                src.bucket,
                src.object_path,
                tmp,
                max_bytes=int(s.max_download_bytes),
            )
            return await asyncio.to_thread(stage, tmp, name)
        finally:
            # moved into the workspace on success; leftover only on failure
            tmp.unlink(missing_ok=True)

    async def _publish(self, session_id: str, result: PipelineResult) -> _Published:
        s = get_settings()
        if self.object_store is None or bool(s.local_only):
            return _Published(location=str(result.output_path), local_only=True)
        bucket = str(s.output_bucket)
        object_path = f"{session_id}/{uuid.uuid4()}_{safe_filename(result.processed_filename)}"
        await asyncio.to_thread(
            self.object_store.upload_file,
            bucket,
            object_path,
            result.output_path,
            content_type=VIDEO_MEDIA_TYPE,
        )
        return _Published(location=f"{bucket}/{object_path}", local_only=False)

    def _arm_cleanup(self, work_dir: Path, rec: JobRecord | None) -> None:
        s = get_settings()
        after = float(s.cleanup_grace_s)
        if rec is not None and rec.status is JobStatus.COMPLETED and rec.local_only:
            # the download path serves straight from the workspace until expiry
            after = max(after, (rec.expires_at - now_utc()).total_seconds())
        try:
            self.cleanup.schedule(work_dir, after_s=after)
        except RuntimeError as ex:
            logger.warning("workspace_cleanup_not_armed", work_dir=str(work_dir), error=str(ex))

    # --- read side ---

    def status(self, job_id: str) -> JobStatusView:
        rec = self.store.get(job_id)
        if rec is None:
            raise NotFound(f"Job not found: {job_id}")
        return JobStatusView.of(rec)

    async def open_download(self, job_id: str) -> DownloadTarget:
        rec = self.store.get(job_id)
        if rec is None:
            raise NotFound(f"Job not found: {job_id}")
        if rec.status is not JobStatus.COMPLETED:
            raise NotReady(f"Job {job_id} is {rec.status.value}")
        if not rec.output_location:
            raise MissingArtifact(f"Job {job_id} has no output")

        if not rec.local_only:
            if self.object_store is None:
                raise MissingArtifact("Output lives in object storage, which is not configured")
            bucket, _, object_path = rec.output_location.partition("/")
            url = await asyncio.to_thread(
                self.object_store.create_signed_url,
                bucket,
                object_path,
                expires_in=int(get_settings().output_signed_url_ttl_s),
            )
            return DownloadTarget(filename=rec.processed_filename, redirect_url=url)

        path = Path(rec.output_location)
        if not path.is_file():
            raise MissingArtifact(f"Output no longer on disk for job {job_id}")
        return DownloadTarget(
            filename=rec.processed_filename, path=path, size=path.stat().st_size
        )


def _stage_local(path: Path, name: str, *, copy: bool) -> StagedInput:
    if not copy:
        return stage(path, name)
    if not path.is_file():
        raise StagingError(f"Source file not found: {path}")
    uploads = get_settings().public.resolved_uploads_dir()
    uploads.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix="copy-", suffix=path.suffix, dir=str(uploads))
    tmp = Path(tmp_name)
    try:
        with open(fd, "wb") as dst, path.open("rb") as src:
            shutil.copyfileobj(src, dst)
        return stage(tmp, name)
    except OSError as ex:
        raise StagingError(f"Could not copy {path}: {ex}") from ex
    finally:
        tmp.unlink(missing_ok=True)
