from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

PLACEHOLDER_OUTPUT = "output.mp4"
MAX_NOISE_AMPLITUDE = 0.005


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not JobStatus.PROCESSING


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def clamp(n: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, n))


def _pct(value: Any, default: float) -> float:
    if value is None:
        return float(default)
    v = float(value)
    if math.isnan(v):
        return float(default)
    return clamp(v, 0.0, 100.0)


@dataclass(frozen=True, slots=True)
class ShieldOptions:
    """Caller-facing 0..100 knobs, clamped on construction via `from_raw`."""

    phase_inversion: float = 100.0
    ultrasonic_noise: float = 50.0

    @classmethod
    def from_raw(cls, phase_inversion: Any = None, ultrasonic_noise: Any = None) -> ShieldOptions:
        return cls(
            phase_inversion=_pct(phase_inversion, 100.0),
            ultrasonic_noise=_pct(ultrasonic_noise, 50.0),
        )

    @property
    def phase_factor(self) -> float:
        return clamp(self.phase_inversion, 0.0, 100.0) / 100.0

    @property
    def noise_level(self) -> float:
        return (clamp(self.ultrasonic_noise, 0.0, 100.0) / 100.0) * MAX_NOISE_AMPLITUDE


@dataclass(frozen=True, slots=True)
class SourceRef:
    """Where the input lives: a local file, or an object in a storage bucket."""

    local_path: Path | None = None
    bucket: str = ""
    object_path: str = ""

    @property
    def remote(self) -> bool:
        return self.local_path is None

    def describe(self) -> str:
        if self.local_path is not None:
            return str(self.local_path)
        return f"{self.bucket}/{self.object_path}"


@dataclass(slots=True)
class JobRecord:
    id: str
    session_id: str
    original_filename: str
    created_at: datetime
    expires_at: datetime
    status: JobStatus = JobStatus.PROCESSING
    processed_filename: str = PLACEHOLDER_OUTPUT
    output_location: str | None = None
    local_only: bool = True
    error: str | None = None
    duration_s: float | None = None
    file_size: int | None = None
    shield_strategy: str | None = None
    work_dir: str | None = None
    updated_at: datetime | None = None
    options: dict[str, float] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        *,
        original_filename: str,
        session_id: str | None = None,
        ttl: timedelta = timedelta(hours=24),
        job_id: str | None = None,
        options: ShieldOptions | None = None,
    ) -> JobRecord:
        created = now_utc()
        # expires_at must be strictly later than created_at
        if ttl <= timedelta(0):
            ttl = timedelta(microseconds=1)
        opts = options or ShieldOptions()
        return cls(
            id=job_id or new_id(),
            session_id=session_id or new_id(),
            original_filename=original_filename,
            created_at=created,
            expires_at=created + ttl,
            updated_at=created,
            options={
                "phase_inversion": opts.phase_inversion,
                "ultrasonic_noise": opts.ultrasonic_noise,
            },
        )

