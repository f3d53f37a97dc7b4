from __future__ import annotations


class AudioShieldError(RuntimeError):
    """Base class for every error the pipeline records or returns."""


class ValidationError(AudioShieldError):
    pass


class Busy(AudioShieldError):
    """Submission rejected because the pending-job ceiling is reached."""


class StagingError(AudioShieldError):
    pass


class ProbeError(AudioShieldError):
    pass


class DurationExceeded(AudioShieldError):
    def __init__(self, duration_s: float, max_s: float) -> None:
        self.duration_s = float(duration_s)
        self.max_s = float(max_s)
        super().__init__(
            f"Media too long: {self.duration_s:.1f}s ({self.duration_s / 60:.1f} min). "
            f"Maximum allowed: {self.max_s:.0f}s ({self.max_s / 60:.1f} min)."
        )


class ExtractError(AudioShieldError):
    pass


class ShieldError(AudioShieldError):
    def __init__(self, message: str, *, failures: dict[str, str] | None = None) -> None:
        self.failures = dict(failures or {})
        super().__init__(message)


class RecombineError(AudioShieldError):
    pass


class StorageFailure(AudioShieldError):
    pass


class NotFound(AudioShieldError):
    pass


class NotReady(AudioShieldError):
    pass


class MissingArtifact(AudioShieldError):
    pass


class DuplicateJob(AudioShieldError):
    pass


class InvalidTransition(AudioShieldError):
    pass


def describe(ex: BaseException) -> str:
    """Human-readable `<Type>: <message>` string stored on failed jobs."""
    msg = str(ex).strip()
    name = type(ex).__name__
    return f"{name}: {msg}" if msg else name
