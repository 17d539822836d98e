import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from taskapi.cache.layer import RedisCacheBackend, build_cache_backend
from taskapi.core.config import Settings, get_settings
from taskapi.core.errors import TaskNotFoundError, TaskStoreError, TaskValidationError
from taskapi.core.logging import new_trace_id, setup_logging, trace_id_var
from taskapi.core.metrics import NullMetrics, PrometheusMetrics
from taskapi.database import build_engine, build_session_factory, create_db_and_tables
from taskapi.routers import tasks
from taskapi.schemas import INTERNAL_SERVER_ERROR, NOT_FOUND, failed_response

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings

    engine = build_engine(settings)
    app.state.session_factory = build_session_factory(engine)
    if settings.create_tables:
        await create_db_and_tables(engine)

    cache_backend = build_cache_backend(settings)
    if isinstance(cache_backend, RedisCacheBackend):
        await cache_backend.connect()
    app.state.cache_backend = cache_backend
    logger.info(f"Cache layer initialized: backend={settings.cache_backend}")

    yield

    if isinstance(cache_backend, RedisCacheBackend):
        await cache_backend.close()
    await engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_json)

    app = FastAPI(
        title="Task Management API",
        description="Async task management API with PostgreSQL, SQLModel and a cached listing layer",
        swagger_ui_parameters={"displayRequestDuration": True},
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.metrics = PrometheusMetrics() if settings.metrics_enabled else NullMetrics()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def trace_and_measure(request: Request, call_next):
        token = trace_id_var.set(new_trace_id())
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            # Unhandled errors become a 500 further out, so count them as one.
            _record_request(request, "500", time.perf_counter() - start)
            raise
        else:
            _record_request(request, str(response.status_code), time.perf_counter() - start)
            response.headers[TRACE_HEADER] = trace_id_var.get()
            return response
        finally:
            trace_id_var.reset(token)

    register_exception_handlers(app)

    # Include routers
    app.include_router(tasks.router)

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Task Management API",
            "docs": "/docs",
            "version": "1.0.0",
        }

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    if settings.metrics_enabled:

        @app.get(settings.metrics_path, include_in_schema=False)
        async def metrics_endpoint(request: Request):
            return Response(
                request.app.state.metrics.render(), media_type=CONTENT_TYPE_LATEST
            )

    return app


def _record_request(request: Request, status_code: str, elapsed: float):
    metrics = request.app.state.metrics
    metrics.increment("http_requests_total", method=request.method, status=status_code)
    metrics.observe(
        "request_latency_seconds",
        elapsed,
        method=request.method,
        status=status_code,
        service="http",
    )


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(TaskNotFoundError)
    async def not_found_handler(request: Request, exc: TaskNotFoundError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND, content=NOT_FOUND.model_dump()
        )

    @app.exception_handler(TaskValidationError)
    async def validation_handler(request: Request, exc: TaskValidationError):
        logger.error(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=failed_response("validation error", exc.errors).model_dump(),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        logger.error(f"{request.method} {request.url.path} rejected: {errors}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonable_encoder(failed_response("validation error", errors)),
        )

    @app.exception_handler(TaskStoreError)
    async def store_error_handler(request: Request, exc: TaskStoreError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=INTERNAL_SERVER_ERROR.model_dump(),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} crashed: {exc!r}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=INTERNAL_SERVER_ERROR.model_dump(),
        )


app = create_app()
