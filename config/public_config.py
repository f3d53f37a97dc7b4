from __future__ import annotations

import os
import tempfile
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_app_root() -> Path:
    """
    Default application root.

    Historically, this project assumes:
      - Docker: /app
      - Local/dev: current working directory
    """
    env = os.environ.get("APP_ROOT")
    if env:
        return Path(env).resolve()
    if Path("/app").exists():
        return Path("/app").resolve()
    return Path.cwd().resolve()


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- core paths ---
    app_root: Path = Field(default_factory=_default_app_root, alias="APP_ROOT")
    # Per-job workspaces live under here (audio-shield-<uuid>/).
    work_root: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()).resolve(), alias="WORK_ROOT"
    )
    # Where sources fetched from object storage land before staging.
    # If unset, defaults to "<WORK_ROOT>/audio-shield-uploads".
    uploads_dir: Path | None = Field(default=None, alias="UPLOADS_DIR")
    log_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "logs").resolve(), alias="AUDIO_SHIELD_LOG_DIR"
    )

    # --- tool binaries ---
    ffmpeg_bin: str = Field(default="ffmpeg", alias="FFMPEG_BIN")
    ffprobe_bin: str = Field(default="ffprobe", alias="FFPROBE_BIN")
    # Write ffmpeg argv + stderr into <work_dir>/logs for every call.
    ffmpeg_job_logs: bool = Field(default=True, alias="FFMPEG_JOB_LOGS")

    # --- admission ---
    max_media_duration_s: float = Field(default=600.0, alias="MAX_MEDIA_DURATION_S")
    max_download_bytes: int = Field(default=200 * 1024 * 1024, alias="MAX_DOWNLOAD_BYTES")

    # --- job store / retention ---
    job_ttl_hours: float = Field(default=24.0, alias="JOB_TTL_HOURS")
    job_sweep_interval_s: float = Field(default=300.0, alias="JOB_SWEEP_INTERVAL_S")
    # Delay before deleting workspaces that hold nothing servable (failed or uploaded jobs).
    cleanup_grace_s: float = Field(default=60.0, alias="CLEANUP_GRACE_S")
    cleanup_on_shutdown: bool = Field(default=False, alias="CLEANUP_ON_SHUTDOWN")

    # --- concurrency policy (0 = unbounded) ---
    max_concurrent_jobs: int = Field(
        default=2, validation_alias=AliasChoices("MAX_CONCURRENT_JOBS", "MAX_CONCURRENCY_GLOBAL")
    )
    max_pending_jobs: int = Field(default=0, alias="MAX_PENDING_JOBS")

    # --- stage watchdogs (seconds, 0 = no deadline) ---
    timeout_probe_s: int = Field(default=30, alias="TIMEOUT_PROBE_S")
    timeout_extract_s: int = Field(default=10 * 60, alias="TIMEOUT_EXTRACT_S")
    timeout_shield_s: int = Field(default=15 * 60, alias="TIMEOUT_SHIELD_S")
    timeout_recombine_s: int = Field(default=15 * 60, alias="TIMEOUT_RECOMBINE_S")

    # --- audio encoding ---
    audio_sample_rate: int = Field(default=44100, alias="AUDIO_SAMPLE_RATE")
    audio_bitrate: str = Field(default="192k", alias="AUDIO_BITRATE")
    processed_suffix: str = Field(default="_blindado", alias="PROCESSED_SUFFIX")

    # --- object storage (credentials live in secrets) ---
    local_only: bool = Field(default=False, alias="LOCAL_ONLY")
    output_bucket: str = Field(default="processed", alias="OUTPUT_BUCKET")
    input_signed_url_ttl_s: int = Field(default=15 * 60, alias="INPUT_SIGNED_URL_TTL_S")
    output_signed_url_ttl_s: int = Field(default=60 * 60, alias="OUTPUT_SIGNED_URL_TTL_S")
    storage_timeout_s: float = Field(default=120.0, alias="STORAGE_TIMEOUT_S")

    # --- web server ---
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    cors_origins: str = Field(default="", alias="CORS_ORIGINS")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in (self.cors_origins or "").split(",") if o.strip()]

    def resolved_uploads_dir(self) -> Path:
        if self.uploads_dir is not None:
            return Path(self.uploads_dir).resolve()
        return (Path(self.work_root) / "audio-shield-uploads").resolve()
