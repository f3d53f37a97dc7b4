from __future__ import annotations

import dataclasses
import threading
from datetime import datetime
from typing import Any

from audio_shield.errors import DuplicateJob, InvalidTransition, NotFound
from audio_shield.jobs.models import JobRecord, JobStatus, now_utc
from audio_shield.utils.log import logger

_FIELDS = {f.name for f in dataclasses.fields(JobRecord)}
_IMMUTABLE = {"id", "created_at"}


def _snapshot(rec: JobRecord) -> JobRecord:
    return dataclasses.replace(rec, options=dict(rec.options))


class JobStore:
    """
    In-memory, TTL-bounded job records.

    Every read and write goes through one lock; callers only ever see copies,
    so a status query can never observe a half-applied transition.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, JobRecord] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def create(self, id: str, record: JobRecord) -> JobRecord:
        if record.id != id:
            raise ValueError(f"record id {record.id!r} does not match key {id!r}")
        if not record.expires_at > record.created_at:
            raise ValueError("expires_at must be later than created_at")
        with self._lock:
            if id in self._jobs:
                raise DuplicateJob(f"Job already exists: {id}")
            self._jobs[id] = _snapshot(record)
        logger.info("job_record_created", job_id=id, status=record.status.value)
        return _snapshot(record)

    def get(self, id: str) -> JobRecord | None:
        with self._lock:
            rec = self._jobs.get(id)
            return _snapshot(rec) if rec is not None else None

    def update(self, id: str, **fields: Any) -> JobRecord:
        """
        Apply `fields` to the record at `id` as one atomic replacement.

        Allowed status moves: processing -> processing (metadata only),
        processing -> completed, processing -> failed.
        """
        unknown = set(fields) - _FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        frozen = _IMMUTABLE & set(fields)
        if frozen:
            raise ValueError(f"Immutable job fields: {sorted(frozen)}")
        if "status" in fields:
            fields["status"] = JobStatus(fields["status"])

        with self._lock:
            cur = self._jobs.get(id)
            if cur is None:
                raise NotFound(f"Job not found: {id}")
            if cur.status.terminal:
                raise InvalidTransition(
                    f"Job {id} is already {cur.status.value}; refusing update"
                )
            new_status = fields.get("status", cur.status)
            if new_status is not JobStatus.FAILED and fields.get("error"):
                raise InvalidTransition("error may only be set when the job fails")
            fields.setdefault("updated_at", now_utc())
            nxt = dataclasses.replace(cur, **fields)
            if not nxt.expires_at > nxt.created_at:
                raise InvalidTransition("expires_at must stay later than created_at")
            self._jobs[id] = nxt
            out = _snapshot(nxt)
        if "status" in fields:
            logger.info("job_record_updated", job_id=id, status=out.status.value)
        return out

    def delete(self, id: str) -> bool:
        with self._lock:
            removed = self._jobs.pop(id, None) is not None
        if removed:
            logger.info("job_record_deleted", job_id=id)
        return removed

    def list_by_session(self, session_id: str) -> list[JobRecord]:
        with self._lock:
            recs = [_snapshot(r) for r in self._jobs.values() if r.session_id == session_id]
        recs.sort(key=lambda r: r.created_at)
        return recs

    def list(self) -> list[JobRecord]:
        with self._lock:
            return [_snapshot(r) for r in self._jobs.values()]

    def sweep(self, now: datetime | None = None) -> int:
        """Remove every record whose expires_at <= now. Returns the count removed."""
        cutoff = now or now_utc()
        with self._lock:
            expired = [jid for jid, r in self._jobs.items() if r.expires_at <= cutoff]
            for jid in expired:
                del self._jobs[jid]
        if expired:
            logger.info("job_store_swept", removed=len(expired))
        return len(expired)
