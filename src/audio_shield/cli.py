from __future__ import annotations

import asyncio
import json
import shutil
from pathlib import Path

import click

from audio_shield import __version__
from audio_shield.config import get_safe_config_report, get_settings
from audio_shield.errors import AudioShieldError, DurationExceeded, describe
from audio_shield.jobs.models import JobStatus, SourceRef
from audio_shield.jobs.runner import JobRunner, SubmitRequest
from audio_shield.jobs.store import JobStore
from audio_shield.media.probe import check_duration, probe_duration
from audio_shield.utils.log import set_log_level

_PERCENT = click.FloatRange(0.0, 100.0, clamp=True)


@click.group(name="audio-shield", help="audio-shield: transcription-resistant audio for video files")
@click.version_option(__version__, prog_name="audio-shield")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
def cli(log_level: str | None) -> None:
    if log_level:
        set_log_level(log_level)


@cli.command(name="serve")
@click.option("--host", default=None, help="Bind address (default: HOST).")
@click.option("--port", type=int, default=None, help="Bind port (default: PORT).")
def serve(host: str | None, port: int | None) -> None:
    """Run the HTTP service."""
    import uvicorn

    s = get_settings()
    uvicorn.run(
        "audio_shield.server:create_app",
        factory=True,
        host=str(host or s.host),
        port=int(port or s.port),
        reload=False,
    )


async def _shield_once(src: Path, out: Path, phase: float | None, noise: float | None) -> dict:
    runner = JobRunner(JobStore())
    job_id = runner.submit(
        SubmitRequest(
            source=SourceRef(local_path=src),
            original_filename=src.name,
            phase_inversion=phase,
            ultrasonic_noise=noise,
            keep_source=True,
        )
    )
    await runner.wait(job_id)
    rec = runner.store.get(job_id)
    try:
        if rec is None or rec.status is not JobStatus.COMPLETED:
            raise click.ClickException(rec.error if rec and rec.error else "job did not complete")
        out.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(str(rec.output_location), str(out))
        return {
            "job_id": job_id,
            "output": str(out),
            "duration_s": rec.duration_s,
            "bytes": rec.file_size,
            "strategy": rec.shield_strategy,
            "options": rec.options,
        }
    finally:
        await runner.cleanup.run_now()


@cli.command(name="shield")
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-o",
    "--output",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Output file (default: <input>_blindado.mp4 next to the input).",
)
@click.option("--phase-inversion", type=_PERCENT, default=None, help="0..100 (default 100).")
@click.option("--ultrasonic-noise", type=_PERCENT, default=None, help="0..100 (default 50).")
def shield(
    input_path: Path,
    output_path: Path | None,
    phase_inversion: float | None,
    ultrasonic_noise: float | None,
) -> None:
    """
    Shield one local video file and write the result.

    The input file is left untouched.
    """
    if output_path is None:
        s = get_settings()
        output_path = input_path.with_name(f"{input_path.stem}{s.processed_suffix}.mp4")
    if output_path.resolve() == input_path.resolve():
        raise click.BadParameter("output must differ from input", param_hint="--output")
    summary = asyncio.run(_shield_once(input_path, output_path, phase_inversion, ultrasonic_noise))
    click.echo(json.dumps(summary, indent=2, sort_keys=True))


@cli.command(name="probe")
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def probe(input_path: Path) -> None:
    """Report duration and whether the file passes the duration limit."""
    limit = float(get_settings().max_media_duration_s)
    try:
        d = probe_duration(input_path)
    except AudioShieldError as ex:
        raise click.ClickException(describe(ex)) from None
    report = {"path": str(input_path), "duration_s": round(d, 3), "max_s": limit, "ok": True}
    try:
        check_duration(d, max_s=limit)
    except DurationExceeded as ex:
        report["ok"] = False
        report["error"] = str(ex)
    click.echo(json.dumps(report, indent=2, sort_keys=True))
    if not report["ok"]:
        raise SystemExit(2)


@cli.command(name="config")
def config_report() -> None:
    """Print the effective configuration (secrets masked)."""
    click.echo(json.dumps(get_safe_config_report(), indent=2, sort_keys=True))


def main() -> None:
    cli(prog_name="audio-shield")


if __name__ == "__main__":  # pragma: no cover
    main()
