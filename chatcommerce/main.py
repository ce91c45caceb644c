import asyncio
import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatcommerce.config import Settings, settings
from chatcommerce.database import SessionLocal, init_db
from chatcommerce.logging_config import get_logger, setup_logging
from chatcommerce.routers import jobs, webhook
from chatcommerce.services.container import ServiceContainer, build_container

setup_logging(settings.log_level)

worker_logger = get_logger("job_worker")


def _is_job_worker_enabled(config: Settings) -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return config.job_worker_enabled


async def _job_worker_loop(container: ServiceContainer) -> None:
    config = container.settings
    queue = container.queue
    interval_seconds = max(config.job_worker_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            requeued = await asyncio.to_thread(queue.requeue_stale, config.job_stale_after_seconds)
            fired = await asyncio.to_thread(queue.fire_recurring)
            counts = await asyncio.to_thread(queue.run_due_jobs, config.job_worker_batch_size)
            if requeued or fired or counts:
                worker_logger.info(
                    "Job worker processed",
                    extra={"context": {"requeued": requeued, "recurring_fired": len(fired), **counts}},
                )
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Job worker loop failed",
                exc_info=True,
                extra={"context": {"error": str(exc)}},
            )


def create_app(container: Optional[ServiceContainer] = None, config: Settings = settings) -> FastAPI:
    app = FastAPI(
        title="ChatCommerce API",
        description="Conversational commerce backend for WhatsApp",
        version="0.1.0",
    )

    cors_origins = [origin.strip() for origin in config.cors_allow_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhook.router)
    app.include_router(jobs.router)

    app.state.container = container
    app.state.job_worker_task = None

    @app.on_event("startup")
    async def start_services() -> None:
        if app.state.container is None:
            init_db()
            app.state.container = build_container(config, SessionLocal)
        app.state.container.hooks.register_recurring()

        if not _is_job_worker_enabled(app.state.container.settings):
            return
        task = app.state.job_worker_task
        if task is None or task.done():
            app.state.job_worker_task = asyncio.create_task(_job_worker_loop(app.state.container))
            worker_logger.info("Job worker started")

    @app.on_event("shutdown")
    async def stop_services() -> None:
        task = app.state.job_worker_task
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.job_worker_task = None

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
