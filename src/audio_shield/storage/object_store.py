from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

import httpx

from audio_shield.config import Settings, get_settings
from audio_shield.errors import StorageFailure
from audio_shield.utils.log import logger

_CHUNK = 1024 * 1024


class ObjectStore(Protocol):
    def upload_file(
        self, bucket: str, object_path: str, local_path: Path, *, content_type: str
    ) -> None: ...

    def create_signed_url(self, bucket: str, object_path: str, *, expires_in: int) -> str: ...

    def download_to(
        self, bucket: str, object_path: str, dest: Path, *, max_bytes: int
    ) -> int: ...


def _signed_url_from(resp: Any) -> str:
    # storage clients have returned both spellings over time
    if isinstance(resp, dict):
        for k in ("signedURL", "signedUrl", "signed_url"):
            v = resp.get(k)
            if v:
                return str(v)
    v = getattr(resp, "signed_url", None) or getattr(resp, "signedURL", None)
    return str(v) if v else ""


class SupabaseObjectStore:
    """Object storage backed by Supabase Storage, using the service-role key."""

    def __init__(self, *, url: str, service_role_key: str, timeout_s: float = 120.0) -> None:
        from supabase import create_client

        self._client = create_client(url, service_role_key)
        self._timeout_s = float(timeout_s)

    def _bucket(self, bucket: str):
        return self._client.storage.from_(bucket)

    def upload_file(
        self, bucket: str, object_path: str, local_path: Path, *, content_type: str
    ) -> None:
        try:
            with Path(local_path).open("rb") as f:
                self._bucket(bucket).upload(
                    path=object_path,
                    file=f,
                    file_options={"content-type": content_type, "upsert": "true"},
                )
        except OSError as ex:
            raise StorageFailure(f"Could not read {local_path} for upload: {ex}") from ex
        except Exception as ex:
            raise StorageFailure(f"Upload to {bucket}/{object_path} failed: {ex}") from ex
        logger.info("storage_uploaded", bucket=bucket, object_path=object_path)

    def create_signed_url(self, bucket: str, object_path: str, *, expires_in: int) -> str:
        try:
            resp = self._bucket(bucket).create_signed_url(object_path, int(expires_in))
        except Exception as ex:
            raise StorageFailure(f"Could not sign {bucket}/{object_path}: {ex}") from ex
        url = _signed_url_from(resp)
        if not url:
            raise StorageFailure(f"Storage returned no signed URL for {bucket}/{object_path}")
        return url

    def download_to(
        self, bucket: str, object_path: str, dest: Path, *, max_bytes: int
    ) -> int:
        """
        Stream an object to `dest` without buffering it in memory.

        Enforces `max_bytes` against both the declared and the received size.
        """
        s = get_settings()
        url = self.create_signed_url(
            bucket, object_path, expires_in=int(s.input_signed_url_ttl_s)
        )
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        total = 0
        try:
            with httpx.Client(timeout=self._timeout_s, follow_redirects=True) as client:
                with client.stream("GET", url) as resp:
                    if resp.status_code >= 400:
                        raise StorageFailure(
                            f"Download of {bucket}/{object_path} failed ({resp.status_code})"
                        )
                    declared = resp.headers.get("content-length")
                    if declared and max_bytes > 0 and int(declared) > max_bytes:
                        raise StorageFailure(
                            f"Object too large ({int(declared)} bytes). Limit: {max_bytes} bytes."
                        )
                    with dest.open("wb") as f:
                        for chunk in resp.iter_bytes(_CHUNK):
                            total += len(chunk)
                            if max_bytes > 0 and total > max_bytes:
                                raise StorageFailure(
                                    f"Object too large (> {max_bytes} bytes). Limit: {max_bytes} bytes."
                                )
                            f.write(chunk)
        except StorageFailure:
            dest.unlink(missing_ok=True)
            raise
        except (httpx.HTTPError, OSError) as ex:
            dest.unlink(missing_ok=True)
            raise StorageFailure(f"Download of {bucket}/{object_path} failed: {ex}") from ex
        logger.info("storage_downloaded", bucket=bucket, object_path=object_path, bytes=total)
        return total


def build_object_store(s: Settings | None = None) -> ObjectStore | None:
    """The configured store, or None when the service runs local-only."""
    s = s or get_settings()
    if not s.storage_configured():
        return None
    return SupabaseObjectStore(
        url=str(s.supabase_url),
        service_role_key=s.supabase_service_role_key.get_secret_value(),
        timeout_s=float(s.storage_timeout_s),
    )
