from __future__ import annotations

import logging
import re
import sys
from contextlib import suppress
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from audio_shield.config import get_settings

job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
session_id_var: ContextVar[str | None] = ContextVar("session_id", default=None)


def set_job_context(job_id: str | None, session_id: str | None = None) -> None:
    """Bind the job/session ids for every event logged from the current task."""
    job_id_var.set(job_id)
    session_id_var.set(session_id)


def _log_path() -> Path:
    s = get_settings()
    return Path(s.log_dir) / "app.log"


_JWT_RE = re.compile(r"\beyJ[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\b")
_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9_\-\.=]+)")
# Signed storage URLs carry their credential in the query string.
_SIGNED_URL_TOKEN_RE = re.compile(r"(?i)([?&](?:token|signature|x-amz-signature)=)[^&\s\"']+")
_KV_RE = re.compile(
    r"(?i)\b(service_role_key|supabase_service_role_key|apikey|token|secret|password|api_key)\b\s*=\s*([^\s,;]+)"
)


def _secret_literals() -> list[str]:
    """
    Return configured secret values that must never appear in logs.
    Best-effort (safe even if settings aren't fully initialized yet).
    """
    vals: list[str] = []
    try:
        sec = getattr(get_settings(), "secret", None)
        if sec is not None:
            v = getattr(sec, "supabase_service_role_key", None)
            if v is not None and hasattr(v, "get_secret_value"):
                raw = str(v.get_secret_value() or "")
                if raw:
                    vals.append(raw)
    except Exception:
        pass
    # ignore tiny values to avoid over-redaction
    return [v for v in dict.fromkeys(vals) if len(v) >= 8]


def _redact_str(s: str) -> str:
    with suppress(Exception):
        for lit in _secret_literals():
            if lit and lit in s:
                s = s.replace(lit, "***REDACTED***")
    s = _JWT_RE.sub("***REDACTED***", s)
    s = _BEARER_RE.sub("Bearer ***REDACTED***", s)
    s = _SIGNED_URL_TOKEN_RE.sub(r"\1***REDACTED***", s)
    s = _KV_RE.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    return s


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in list(event_dict.items()):
        if isinstance(v, str):
            event_dict[k] = _redact_str(v)
    return event_dict


def add_contextvars(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    jid = job_id_var.get()
    sid = session_id_var.get()
    if jid:
        event_dict.setdefault("job_id", jid)
    if sid:
        event_dict.setdefault("session_id", sid)
    return event_dict


def rename_event_to_msg(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "msg" not in event_dict and "event" in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


def _configure_structlog() -> structlog.stdlib.BoundLogger:
    s = get_settings()
    level = str(s.log_level).upper()

    root = logging.getLogger()
    root.setLevel(level)

    # Avoid duplicates if re-imported
    if getattr(root, "_audio_shield_structlog_configured", False):
        return structlog.get_logger("audio_shield")

    foreign_pre_chain = [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        add_contextvars,
        redact_event,
        structlog.processors.format_exc_info,
        rename_event_to_msg,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=foreign_pre_chain,
    )

    handlers: list[logging.Handler] = []
    try:
        log_path = _log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                filename=str(log_path),
                maxBytes=int(s.log_max_bytes),
                backupCount=int(s.log_backup_count),
                encoding="utf-8",
            )
        )
    except OSError:
        # read-only deployments still get stdout logging
        pass
    handlers.append(logging.StreamHandler(sys.stdout))

    root.handlers.clear()
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.stdlib.add_log_level,
            add_contextvars,
            redact_event,
            structlog.processors.format_exc_info,
            rename_event_to_msg,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root._audio_shield_structlog_configured = True
    return structlog.get_logger("audio_shield")


logger = _configure_structlog()


def set_log_level(level: str) -> None:
    """
    Best-effort runtime log level override (CLI convenience).
    Does not change handlers/formatters; only raises/lowers filtering level.
    """
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in root.handlers:
        h.setLevel(lvl)
