"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from prometheus_fastapi_instrumentator import Instrumentator

from alcpt.api.admin import router as admin_router
from alcpt.api.auth import router as auth_router
from alcpt.api.exams import router as exams_router
from alcpt.api.progress import router as progress_router
from alcpt.api.questions import router as questions_router
from alcpt.core.cache import build_locks
from alcpt.core.config import settings
from alcpt.core.database import AsyncSessionLocal, close_db, init_db
from alcpt.core.errors import AppError, CollaboratorFailure, PersistenceFailure
from alcpt.core.logging_config import configure_logging
from alcpt.jobs.handlers import JobHandlers
from alcpt.jobs.queue import BackgroundProcessor
from alcpt.services.artifacts import ArtifactCache, build_artifact_cache
from alcpt.services.batch_optimizer import BatchOptimizer

configure_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry if configured
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )


def attach_services(
    app: FastAPI,
    artifacts: ArtifactCache,
    session_factory: async_sessionmaker[AsyncSession],
    processor: Optional[BackgroundProcessor] = None,
    optimizer: Optional[BatchOptimizer] = None,
) -> BackgroundProcessor:
    """Wire the artifact cache, job processor and batch optimizer onto ``app.state``."""
    processor = processor or BackgroundProcessor()
    for kind, handler in JobHandlers(artifacts, session_factory, processor.submit).table().items():
        processor.register(kind, handler)

    app.state.artifacts = artifacts
    app.state.session_factory = session_factory
    app.state.processor = processor
    app.state.optimizer = optimizer or BatchOptimizer(artifacts, session_factory)
    return processor


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    """
    logger.info("Starting %s...", settings.APP_NAME)

    await init_db()

    locks = build_locks()
    processor = attach_services(app, build_artifact_cache(locks), AsyncSessionLocal)
    processor.start()

    yield

    logger.info("Shutting down %s...", settings.APP_NAME)
    await processor.stop()
    await locks.close()
    await close_db()
    logger.info("Shutdown complete")


def _error(status_code: int, message: str, error_type: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type, "status_code": status_code, **extra}},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION,
        docs_url="/docs" if not settings.is_production() else None,
        redoc_url="/redoc" if not settings.is_production() else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.PROMETHEUS_ENABLED:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    # Exception handlers
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if isinstance(exc, CollaboratorFailure):
            logger.warning("Collaborator failure on %s: %s", request.url.path, exc.message)
        return _error(exc.status_code, exc.message, exc.error_type, detail=exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, exc.detail, "http_error")

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation error",
            "validation_error",
            details=jsonable_errors(exc),
        )

    @app.exception_handler(SQLAlchemyError)
    async def persistence_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("Database error on %s: %s", request.url.path, exc, exc_info=True)
        failure = PersistenceFailure("A database error occurred")
        return _error(failure.status_code, failure.message, failure.error_type)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
        if settings.is_production():
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "An internal error occurred", "internal_error")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc), "internal_error", debug=True)

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
        }

    prefix = settings.API_PREFIX
    app.include_router(auth_router, prefix=f"{prefix}/auth", tags=["auth"])
    app.include_router(exams_router, prefix=prefix, tags=["tests"])
    app.include_router(questions_router, prefix=prefix, tags=["questions"])
    app.include_router(progress_router, prefix=prefix, tags=["progress"])
    app.include_router(admin_router, prefix=f"{prefix}/admin", tags=["admin"])

    audio_dir = Path(settings.AUDIO_STORAGE_DIR)
    audio_dir.mkdir(parents=True, exist_ok=True)
    app.mount(settings.AUDIO_URL_PREFIX, StaticFiles(directory=audio_dir), name="audio")

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may hold exception instances that JSONResponse cannot encode
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "alcpt.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        workers=settings.WORKERS if not settings.RELOAD else 1,
        log_level=settings.LOG_LEVEL.lower(),
    )
