from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import FileResponse, RedirectResponse

from audio_shield.errors import Busy, MissingArtifact, NotFound, NotReady, ValidationError
from audio_shield.jobs.models import SourceRef
from audio_shield.jobs.runner import JobRunner, JobStatusView, SubmitRequest

router = APIRouter()


def _get_runner(request: Request) -> JobRunner:
    r = getattr(request.app.state, "job_runner", None)
    if r is None:
        raise HTTPException(status_code=500, detail="Job runner not initialized")
    return r


def _view_json(job_id: str, v: JobStatusView) -> dict[str, Any]:
    out: dict[str, Any] = {
        "jobId": job_id,
        "status": v.status.value,
        "originalFilename": v.original_filename,
        "processedFilename": v.processed_filename,
        "expiresAt": v.expires_at.isoformat(),
    }
    if v.download_reference:
        out["downloadUrl"] = v.download_reference
    if v.error:
        out["error"] = v.error
    if v.duration_s is not None:
        out["duration"] = round(float(v.duration_s), 3)
    return out


@router.post("/api/process-video", status_code=202)
async def process_video(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON") from None
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    opts = body.get("options") or {}
    if not isinstance(opts, dict):
        raise HTTPException(status_code=400, detail="options must be an object")
    bucket = str(body.get("bucket") or "").strip()
    path = str(body.get("path") or "").strip()
    req = SubmitRequest(
        source=SourceRef(bucket=bucket, object_path=path),
        original_filename=str(body.get("filename") or path.rsplit("/", 1)[-1]),
        session_id=str(body.get("sessionId") or "").strip() or None,
        phase_inversion=opts.get("phaseInversion"),
        ultrasonic_noise=opts.get("ultrasonicNoise"),
    )
    runner = _get_runner(request)
    try:
        job_id = runner.submit(req)
    except ValidationError as ex:
        raise HTTPException(status_code=400, detail=str(ex)) from None
    except Busy as ex:
        raise HTTPException(status_code=503, detail=str(ex)) from None
    rec = runner.store.get(job_id)
    return {
        "jobId": job_id,
        "sessionId": rec.session_id if rec is not None else None,
        "status": "processing",
        "message": "Processing started",
    }


@router.get("/api/status/{job_id}")
async def job_status(request: Request, job_id: str) -> dict[str, Any]:
    try:
        v = _get_runner(request).status(job_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found") from None
    return _view_json(job_id, v)


@router.get("/api/cache/{job_id}/download")
async def download(request: Request, job_id: str) -> Response:
    try:
        t = await _get_runner(request).open_download(job_id)
    except (NotFound, MissingArtifact) as ex:
        raise HTTPException(status_code=404, detail=str(ex)) from None
    except NotReady as ex:
        raise HTTPException(status_code=409, detail=str(ex)) from None
    if t.redirect_url:
        return RedirectResponse(t.redirect_url, status_code=307)
    return FileResponse(
        str(t.path),
        media_type=t.media_type,
        filename=t.filename,
        content_disposition_type="attachment",
    )
