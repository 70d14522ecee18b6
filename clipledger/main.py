"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from clipledger.api.routes import router
from clipledger.config import settings
from clipledger.db.session import close_engines, get_engine, get_session_factory, init_models
from clipledger.exceptions import ClipLedgerError
from clipledger.models.api import ProviderName
from clipledger.observability import get_logger, metrics, setup_logging, setup_tracing
from clipledger.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from clipledger.services.generation_provider import KieClient
from clipledger.services.ledger import CreditLedger
from clipledger.services.orchestrator import GenerationTaskOrchestrator
from clipledger.services.sora_provider import SoraProvider
from clipledger.services.task_store import TaskStore
from clipledger.services.veo_provider import VeoProvider

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the ledger and orchestrator, resumes tasks left pending by the
    previous process, and stops poll loops on shutdown.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    engine = get_engine()
    instrument_sqlalchemy(engine)
    await init_models(engine)

    session_factory = get_session_factory()
    ledger = CreditLedger(session_factory)
    kie_client = KieClient(
        api_key=settings.kieai_api_key,
        base_url=settings.kieai_base_url,
        timeout=settings.provider_timeout_seconds,
    )
    orchestrator = GenerationTaskOrchestrator(
        ledger=ledger,
        tasks=TaskStore(session_factory),
        providers=[
            VeoProvider(
                kie_client,
                clip_length=settings.veo_clip_seconds,
                callback_url=settings.callback_url,
            ),
            SoraProvider(
                kie_client,
                default_clip_length=settings.sora_default_clip_seconds,
                callback_url=settings.callback_url,
            ),
        ],
        credits_per_second={
            ProviderName.VEO: settings.veo_credits_per_second,
            ProviderName.SORA: settings.sora_credits_per_second,
        },
        poll_interval=settings.poll_interval_seconds,
        max_attempts=settings.poll_max_attempts,
    )

    app.state.ledger = ledger
    app.state.orchestrator = orchestrator

    recovered = await orchestrator.recover_pending()
    logger.info("application_started", recovered_tasks=recovered)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await orchestrator.shutdown()
    await kie_client.close()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


# Add validation error logging handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (ctx may contain non-serializable objects)
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


@app.exception_handler(ClipLedgerError)
async def ledger_exception_handler(request: Request, exc: ClipLedgerError) -> JSONResponse:
    """Domain errors a route didn't map to a status code."""
    metrics.record_error(type(exc).__name__, "http_request")
    logger.error(
        "unhandled_domain_error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        request_id=request_id,
    )

    endpoint = request.url.path
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    try:
        response = await call_next(request)
        duration = time.time() - start_time

        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )

        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "clipledger.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
