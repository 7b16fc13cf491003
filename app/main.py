import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.cache.layer import CacheLayer
from app.core.config import Settings, get_settings
from app.core.exceptions import StorageFault, TaskNotFound
from app.core.logging import setup_logging
from app.database import build_engine, build_session_factory, create_db_and_tables
from app.repositories.purge_queue import PurgeQueue
from app.repositories.task_store import TaskStore
from app.routers import tasks
from app.services.purge_scheduler import DeferredDeletionScheduler
from app.services.task_service import TaskService

logger = logging.getLogger(__name__)


def build_service(settings: Settings, session_factory, cache: CacheLayer) -> TaskService:
    store = TaskStore(session_factory)
    scheduler = DeferredDeletionScheduler(
        store,
        PurgeQueue(session_factory),
        cache,
        delay_seconds=settings.purge_delay_seconds,
        retry_delay_seconds=settings.purge_retry_delay_seconds,
        max_attempts=settings.purge_max_attempts,
    )
    return TaskService(store, cache, scheduler, cache_ttl=settings.cache_ttl_seconds)


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, **extra},
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)

        engine = build_engine(settings)
        await create_db_and_tables(engine)

        cache = CacheLayer(settings)
        await cache.init_cache()

        service = build_service(settings, build_session_factory(engine), cache)
        app.state.task_service = service

        worker = asyncio.create_task(
            service.scheduler.run_worker(
                settings.purge_poll_interval_seconds, settings.purge_batch_limit
            )
        )
        try:
            yield
        finally:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
            await cache.close()
            await engine.dispose()
            logger.info("Shutdown complete")

    app = FastAPI(
        title="Task Management API",
        description="Task API with soft delete, read cache and deferred purge of completed tasks",
        swagger_ui_parameters={"displayRequestDuration": True},
        version="1.0.0",
        lifespan=lifespan,
    )

    # Include routers
    app.include_router(tasks.router)

    @app.exception_handler(TaskNotFound)
    async def task_not_found_handler(request: Request, exc: TaskNotFound):
        return _error(status.HTTP_404_NOT_FOUND, "Task not found.")

    @app.exception_handler(StorageFault)
    async def storage_fault_handler(request: Request, exc: StorageFault):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error.")

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation failed.",
            errors=jsonable_encoder(exc.errors()),
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error.")

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Task Management API",
            "docs": "/docs",
            "version": "1.0.0",
        }

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "cache": app.state.task_service.cache.get_stats()}

    return app


app = create_app()
