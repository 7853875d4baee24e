"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from functools import partial
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.engine import make_url

from pawmotion.api.routes import credits, generations
from pawmotion.core.config import Settings, configure_logging
from pawmotion.core.database import create_schema, setup_db_session
from pawmotion.services.credits.purchases import PurchaseVerificationClient
from pawmotion.services.notifier import JobNotifier
from pawmotion.services.retry import RetryPolicy
from pawmotion.services.storage.storage_client import StorageClient
from pawmotion.services.storage.upload_gateway import UploadGateway
from pawmotion.services.video_generation.orchestrator import GenerationOrchestrator
from pawmotion.services.video_generation.polling import PollPolicy
from pawmotion.services.video_generation.providers import create_video_provider
from pawmotion.services.video_generation.reconciler import StateReconciler
from pawmotion.services.video_generation.submitter import JobSubmitter
from pawmotion.uow import create_uow_factory
from pawmotion.workers.video_poll_worker import run_video_poll_worker

logger = structlog.get_logger()


class ResilientWorker:
    """Handle to a self-restarting worker. `task` is always the live worker task."""

    def __init__(self, name: str):
        self.name = name
        self.task: asyncio.Task | None = None
        self.restart_task: asyncio.Task | None = None

    async def stop(self) -> None:
        """Cancel the live worker and any pending restart, then wait for both."""
        tasks = [task for task in (self.restart_task, self.task) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def create_resilient_worker(
    worker_factory: Callable[[], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
    restart_delay: float = 1.0,
) -> ResilientWorker:
    """Create a worker with automatic restart on failure.

    Args:
        worker_factory: Zero-argument callable returning the worker coroutine
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown
        restart_delay: Seconds to wait before restarting a crashed worker

    Returns:
        Handle whose `task` follows restarts; set shutdown_event, then call stop()
    """
    worker = ResilientWorker(worker_name)

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        # Cancelled outside shutdown (normal for tests and reloads)
        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=restart_delay,
                exc_info=exc,
            )
        else:
            # Worker stopped cleanly (unexpected for infinite loop workers)
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=restart_delay,
            )

        async def restart_worker():
            await asyncio.sleep(restart_delay)

            # Check again if shutdown was requested during sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            start()

        worker.restart_task = asyncio.create_task(restart_worker())

    def start() -> None:
        worker.task = asyncio.create_task(worker_factory())
        worker.task.add_done_callback(on_worker_done)

    start()
    return worker


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, set up the database, wire services, start the poll worker
    - Shutdown: Stop background pipelines and the worker, dispose the engine

    The poll worker runs startup recovery before its first sweep.
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    engine = session_factory.kw["bind"]
    if make_url(settings.database_url).get_backend_name() == "sqlite":
        # Local development database; PostgreSQL deployments run Alembic migrations
        await create_schema(engine)

    uow_factory = create_uow_factory(session_factory)
    notifier = JobNotifier()
    provider = create_video_provider(settings)
    retry_policy = RetryPolicy.from_settings(settings)
    reconciler = StateReconciler(
        uow_factory,
        notifier,
        poll_policy=PollPolicy.from_settings(settings),
        credit_cost=settings.generation_credit_cost,
    )
    upload_gateway = UploadGateway(
        StorageClient(
            base_url=settings.storage_base_url,
            service_key=settings.storage_service_key,
            bucket=settings.storage_bucket,
        ),
        folder=settings.storage_folder,
        allowed_formats=settings.allowed_image_formats_list,
        max_bytes=settings.max_source_image_bytes,
        retry_policy=retry_policy,
        source_root=settings.source_image_root or None,
    )
    orchestrator = GenerationOrchestrator(
        uow_factory,
        reconciler,
        upload_gateway,
        JobSubmitter(provider, retry_policy=retry_policy),
    )

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.notifier = notifier
    app.state.orchestrator = orchestrator
    app.state.purchase_verifier = PurchaseVerificationClient(
        base_url=settings.purchase_verification_url,
        api_key=settings.purchase_verification_key,
    )

    shutdown_event = asyncio.Event()
    poll_worker = create_resilient_worker(
        partial(run_video_poll_worker, uow_factory, provider, reconciler, settings),
        "video_poll",
        shutdown_event,
    )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        video_provider=settings.video_provider,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    await orchestrator.shutdown()
    await poll_worker.stop()

    await engine.dispose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="PawMotion API",
        description="Pet photo to video generation with credit accounting",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(generations.router)  # prefix="/api/generations"
    app.include_router(credits.router)  # prefix="/api/credits"

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
