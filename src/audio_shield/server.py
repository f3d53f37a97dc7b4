from __future__ import annotations

from collections.abc import Sequence
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from audio_shield import __version__
from audio_shield.api.routes_jobs import router as jobs_router
from audio_shield.config import get_settings
from audio_shield.jobs.runner import JobRunner
from audio_shield.jobs.store import JobStore
from audio_shield.ops.cleanup import CleanupScheduler
from audio_shield.runtime import lifecycle
from audio_shield.stages.shield import ShieldStrategy
from audio_shield.storage.object_store import ObjectStore, build_object_store
from audio_shield.utils.log import logger

DRAIN_TIMEOUT_S = 30


def create_app(
    *,
    object_store: ObjectStore | None = None,
    strategies: Sequence[ShieldStrategy] | None = None,
) -> FastAPI:
    """
    Build the HTTP app. `object_store` overrides the configured storage
    client (tests pass a fake); otherwise it is built from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # tests reuse the same process
        with suppress(Exception):
            lifecycle.end_draining()
        s = get_settings()
        store = JobStore()
        cleanup = CleanupScheduler()
        ostore = object_store if object_store is not None else build_object_store(s)
        runner = JobRunner(store, object_store=ostore, cleanup=cleanup, strategies=strategies)
        tasks = lifecycle.LifecycleTasks()
        tasks.create_task(
            lifecycle.sweep_forever(store, interval_s=float(s.job_sweep_interval_s)),
            name="job-store-sweeper",
        )
        app.state.job_store = store
        app.state.job_runner = runner
        app.state.cleanup = cleanup
        logger.info(
            "server_started",
            version=__version__,
            storage=ostore is not None,
            local_only=bool(s.local_only) or ostore is None,
            max_concurrent_jobs=int(s.max_concurrent_jobs),
        )
        yield
        lifecycle.begin_draining(timeout_sec=DRAIN_TIMEOUT_S)
        try:
            await runner.drain(timeout_s=float(DRAIN_TIMEOUT_S))
        finally:
            await tasks.stop()
            if bool(s.cleanup_on_shutdown):
                n = await cleanup.run_now()
                logger.info("shutdown_cleanup_done", removed=n)
            else:
                await cleanup.cancel_all()
            logger.info("server_stopped")

    app = FastAPI(title="audio-shield", version=__version__, lifespan=lifespan)

    s = get_settings()
    origins = s.cors_origin_list()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type"],
        )

    @app.get("/health")
    async def health() -> dict[str, object]:
        st = lifecycle.drain_state()
        return {"ok": not st.draining, "draining": st.draining, "version": __version__}

    app.include_router(jobs_router)
    return app

