from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def cors_origin_list(self) -> list[str]:
        return self.public.cors_origin_list()

    def storage_configured(self) -> bool:
        return bool(
            str(self.secret.supabase_url or "").strip()
            and _secret_value(self.secret.supabase_service_role_key)
        )


def _secret_value(secret: SecretStr | None) -> str:
    try:
        return secret.get_secret_value() if secret else ""
    except Exception:
        return ""


def _validate(s: Settings) -> None:
    """
    Hard-fail only when explicitly requested.

    Without storage credentials the service still runs, keeping outputs local.
    """
    import logging
    import os

    strict = bool(int(os.environ.get("STRICT_SECRETS", "0") or "0"))

    problems: list[str] = []
    if not s.public.local_only and not s.storage_configured():
        problems.append("SUPABASE_URL/SUPABASE_SERVICE_ROLE_KEY")
    if float(s.public.max_media_duration_s) <= 0:
        problems.append("MAX_MEDIA_DURATION_S")
    if float(s.public.job_ttl_hours) <= 0:
        problems.append("JOB_TTL_HOURS")
    if float(s.public.job_sweep_interval_s) <= 0:
        problems.append("JOB_SWEEP_INTERVAL_S")

    if not problems:
        return
    hard = [p for p in problems if not p.startswith("SUPABASE")]
    if hard or strict:
        raise ConfigError(
            "Invalid configuration: "
            + ", ".join(sorted(set(problems)))
            + ". Set them via environment variables, `.env` or `.env.secrets`."
        )
    logging.getLogger("audio_shield").warning(
        "storage_not_configured",
        extra={"missing": problems, "fallback": "local_only"},
    )


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub = s.public.model_dump()
    pub_s: dict[str, Any] = {}
    for k, v in pub.items():
        try:
            pub_s[k] = str(v) if hasattr(v, "__fspath__") else v
        except Exception:
            pub_s[k] = str(v)

    sec: dict[str, str] = {}
    for k in sorted(s.secret.model_fields.keys()):
        v = getattr(s.secret, k, None)
        if v is None:
            sec[k] = "UNSET"
        elif isinstance(v, SecretStr):
            sec[k] = "SET" if v.get_secret_value() else "UNSET"
        else:
            sec[k] = "SET" if str(v).strip() else "UNSET"

    strict = bool(int(__import__("os").environ.get("STRICT_SECRETS", "0") or "0"))
    return {
        "strict_secrets": strict,
        "storage_configured": s.storage_configured(),
        "public": pub_s,
        "secrets": sec,
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    public = PublicConfig()
    secret = SecretConfig()
    s = Settings(public=public, secret=secret)
    _validate(s)
    return s

