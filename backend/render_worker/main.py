import threading
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from render_worker.config import Settings, get_settings
from render_worker.logging_config import get_logger, setup_logging
from render_worker.routers import webhook
from render_worker.services.admission import AdmissionController
from render_worker.services.job_store import BaseJobStore, build_job_store
from render_worker.services.orchestrator import JobOrchestrator
from render_worker.services.storage import StorageService
from render_worker.workers.poller import QueuePoller


logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BaseJobStore] = None,
    orchestrator: Optional[JobOrchestrator] = None,
    storage: Optional[StorageService] = None,
) -> FastAPI:
    """Build the app; collaborators may be injected (tests, local runs)."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        setup_logging()

        storage_service = storage if storage is not None else StorageService()
        app.state.storage_ready = bool(storage_service.ensure_bucket())
        if not app.state.storage_ready:
            logger.warning(
                "storage_not_ready",
                hint="Configure MINIO_ENDPOINT / MINIO_ACCESS_KEY / MINIO_SECRET_KEY",
            )

        job_store = store if store is not None else build_job_store()
        app.state.settings = settings
        app.state.store = job_store
        app.state.admission = AdmissionController(settings.rendering.max_concurrent_renders)
        app.state.orchestrator = orchestrator or JobOrchestrator(job_store, storage=storage_service)

        stop_event = threading.Event()
        poller_thread = None
        if settings.worker.standalone:
            poller = QueuePoller(job_store, app.state.orchestrator, settings.worker.poll_interval_seconds)
            poller_thread = threading.Thread(target=poller.run, args=(stop_event,), name="queue-poller", daemon=True)
            poller_thread.start()

        logger.info(
            "app_started",
            mode=settings.worker.mode,
            max_concurrent_renders=settings.rendering.max_concurrent_renders,
            environment=settings.app.environment,
        )

        yield

        stop_event.set()
        if poller_thread is not None:
            poller_thread.join(timeout=1)
        logger.info("app_shutting_down")

    app = FastAPI(
        title=settings.app.app_name,
        description="Renders scene scripts into published videos",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(webhook.router)

    @app.get("/health", response_class=PlainTextResponse)
    def health_check():
        return "OK"

    @app.get("/health/details")
    def health_details():
        """Detailed health check."""
        state = app.state
        admission = getattr(state, "admission", None)
        return {
            "status": "healthy",
            "mode": settings.worker.mode,
            "environment": settings.app.environment,
            "storage_ready": bool(getattr(state, "storage_ready", False)),
            "minio_endpoint": settings.minio.endpoint,
            "active_renders": admission.active if admission else 0,
            "max_concurrent_renders": settings.rendering.max_concurrent_renders,
        }

    return app


def main():
    """Entry point for the HTTP server."""
    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.app.host, port=settings.app.port)


if __name__ == "__main__":
    main()
