from __future__ import annotations

from collections.abc import Iterator

import pytest

from audio_shield.config import get_settings
from audio_shield.runtime import lifecycle


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> Iterator[None]:
    root = tmp_path_factory.mktemp("as_test")
    (root / "work").mkdir(parents=True, exist_ok=True)
    (root / "uploads").mkdir(parents=True, exist_ok=True)
    (root / "logs").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("WORK_ROOT", str(root / "work"))
    monkeypatch.setenv("UPLOADS_DIR", str(root / "uploads"))
    monkeypatch.setenv("AUDIO_SHIELD_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("LOCAL_ONLY", "1")
    monkeypatch.setenv("FFMPEG_JOB_LOGS", "0")
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
    monkeypatch.delenv("STRICT_SECRETS", raising=False)
    get_settings.cache_clear()
    lifecycle.end_draining()
    yield
    lifecycle.end_draining()
    get_settings.cache_clear()
