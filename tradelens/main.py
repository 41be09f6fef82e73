"""FastAPI application entry point for the TradeLens retrieval service."""

import asyncio
import re
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from tradelens.api.dependencies import (
    get_embedding_service,
    get_engine,
    get_session_store,
    get_vector_index,
)
from tradelens.api.routes import router
from tradelens.api.session_store import SessionStore
from tradelens.config import settings
from tradelens.errors import (
    BuildFailedError,
    BuildInProgressError,
    ConfigurationError,
    DimensionMismatchError,
    EmbeddingFailedError,
    IndexNotFoundError,
    IndexNotReadyError,
    InvalidQueryError,
    RetrievalError,
)
from tradelens.retrieval.embeddings import EmbeddingService
from tradelens.retrieval.engine import RetrievalEngine
from tradelens.retrieval.vector_index import VectorIndex
from tradelens.utils.logging import get_logger, log_context, setup_logging
from tradelens.utils.metrics import get_metrics

logger = get_logger(__name__)

SESSION_PATH = re.compile(r"^/api/sessions/([^/]+)")

# Most specific class first; BuildInProgressError subclasses BuildFailedError
ERROR_STATUS_CODES = (
    (InvalidQueryError, 400),
    (IndexNotFoundError, 404),
    (IndexNotReadyError, 409),
    (BuildInProgressError, 409),
    (BuildFailedError, 422),
    (DimensionMismatchError, 422),
    (EmbeddingFailedError, 503),
    (ConfigurationError, 500),
)


def status_code_for(exc: RetrievalError) -> int:
    """HTTP status for a retrieval error."""
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return 500


def cleanup_once(store: SessionStore, engine: RetrievalEngine) -> int:
    """Expire idle sessions and drop their indexes plus any idle orphan index."""
    expired = store.purge_expired()
    for session_id in expired:
        engine.delete(session_id)
    orphans = engine.cleanup_expired()
    if expired or orphans:
        logger.info("Cleanup: {} sessions expired, {} idle indexes dropped", len(expired), orphans)
    return len(expired) + orphans


async def _cleanup_loop(store: SessionStore, engine: RetrievalEngine, interval: float) -> None:
    """Periodically expire sessions until cancelled."""
    while True:
        await asyncio.sleep(interval)
        with log_context(operation="cleanup"):
            try:
                cleanup_once(store, engine)
            except RetrievalError as e:
                logger.warning("Cleanup pass failed: {}", e)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID, set logging context, and record API metrics."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        match = SESSION_PATH.match(request.url.path)
        start = time.perf_counter()
        with log_context(
            request_id=request_id,
            session_id=match.group(1) if match else None,
            operation=f"{request.method} {request.url.path}",
        ):
            response = await call_next(request)
        get_metrics().record_api_request(request.url.path, response.status_code, time.perf_counter() - start)
        response.headers["X-Request-ID"] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging(log_level=settings.log_level, log_dir=settings.log_dir)

    # Pre-warm the embedder; a backend that fails to load is retried lazily on
    # first request, a dimension mismatch aborts startup
    embedder = get_embedding_service()
    try:
        await asyncio.to_thread(embedder.warm_up)
    except EmbeddingFailedError as e:
        logger.warning("Embedder warm-up failed, continuing with lazy loading: {}", e)
    except ConfigurationError as e:
        logger.critical("Embedder configuration invalid, aborting startup: {}", e)
        embedder.close()
        raise

    cleanup_task = asyncio.create_task(
        _cleanup_loop(get_session_store(), get_engine(), settings.cleanup_interval_seconds)
    )
    logger.info("Application startup complete")
    yield
    # Shutdown: stop the cleanup loop and the embedding worker threads
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass
    embedder.close()
    logger.info("Application shutdown")


app = FastAPI(
    title=settings.app_name,
    description="Session-scoped semantic retrieval over trade transactions",
    version="0.1.0",
    lifespan=lifespan,
)

# Request ID and observability middleware (innermost = runs last before route)
app.add_middleware(RequestIdMiddleware)

# CORS middleware - allow all origins for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


# Exception handlers: typed retrieval errors, 400 validation, 500 server errors
@app.exception_handler(RetrievalError)
async def retrieval_error_handler(request: Request, exc: RetrievalError) -> JSONResponse:
    """Map retrieval errors to HTTP status codes."""
    status_code = status_code_for(exc)
    get_metrics().record_error(type(exc).__name__, context={"path": request.url.path})
    if status_code >= 500:
        logger.error("{} on {}: {}", type(exc).__name__, request.url.path, exc.message)
    else:
        logger.info("{} on {}: {}", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error_type": type(exc).__name__},
    )


def jsonable_errors(errors: list) -> list:
    """Drop non-serializable context (e.g. exception objects) from validation errors."""
    return [{k: v for k, v in e.items() if k in ("type", "loc", "msg")} for e in errors]


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle validation errors (400)."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    detail = errors[0].get("msg", "Validation error") if errors else "Validation error"
    return JSONResponse(
        status_code=400,
        content={"detail": detail, "errors": jsonable_errors(errors)},
    )


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught server errors (500). HTTPException passed through by FastAPI."""
    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )
    get_metrics().record_error(type(exc).__name__, context={"path": request.url.path})
    logger.exception("Server error: {}", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "An internal server error occurred"},
    )


@app.get("/health")
def health_check(
    embedder: EmbeddingService = Depends(get_embedding_service),
    index: VectorIndex = Depends(get_vector_index),
    store: SessionStore = Depends(get_session_store),
) -> dict:
    """Health check with embedder and index status.

    Returns 200 with status 'ok', or 'degraded' while the embedder is cold.
    """
    warm = embedder.is_warm
    stats = index.stats()
    return {
        "status": "ok" if warm else "degraded",
        "components": {
            "embedder": {
                "status": "ok" if warm else "cold",
                "backend": getattr(embedder.backend, "name", "unknown"),
            },
            "vector_index": {
                "status": "ok",
                "indexes": stats.total_indexes,
                "records": stats.total_records,
            },
            "sessions": {"status": "ok", "active": len(store)},
        },
    }


@app.get("/metrics")
def metrics_endpoint() -> dict:
    """Return aggregated observability metrics summary."""
    return get_metrics().get_metrics_summary()
