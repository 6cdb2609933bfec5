from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from coordinator.config import settings
from coordinator.api.v1.router import api_router
from coordinator.api.health import router as health_router
from coordinator.coordination.errors import (
    CoordinationError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
)
from coordinator.coordination.health_monitor import PatrolLoop
from coordinator.core.rate_limiter import limiter
from coordinator.database import AsyncSessionLocal, create_tables, engine
from coordinator.middleware.request_context import RequestIdMiddleware, RequestLoggingMiddleware
from coordinator.observability.logging_config import setup_logging, get_logger
from coordinator.observability.metrics import setup_metrics

setup_logging(log_format=settings.log_format if settings.is_production else "text")

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create missing tables and run the patrol loop for the app's lifetime."""
    if settings.auto_create_tables:
        await create_tables()

    patrol_loop = None
    if settings.patrol_enabled:
        patrol_loop = PatrolLoop(AsyncSessionLocal)
        patrol_loop.start()
    app.state.patrol_loop = patrol_loop

    logger.info(
        "Coordinator started",
        extra={"environment": settings.effective_env, "version": settings.version},
    )

    yield

    if patrol_loop is not None:
        await patrol_loop.stop()
    await engine.dispose()
    logger.info("Coordinator stopped")


app = FastAPI(
    title="Agent Coordinator",
    version=settings.version,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
    lifespan=lifespan,
)
app.state.limiter = limiter
app.state.patrol_loop = None
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def status_for_error(exc: CoordinationError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, UnauthorizedError):
        return 403
    # InvalidTransition, DepthExceeded, TestGateNotMet
    return 422


@app.exception_handler(CoordinationError)
async def coordination_error_handler(request: Request, exc: CoordinationError) -> JSONResponse:
    status_code = status_for_error(exc)
    logger.info(f"{exc.code}: {exc.message}", extra={"path": request.url.path})
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# Setup Prometheus metrics
setup_metrics(app)

# Middleware stack (order matters - last added runs first)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SlowAPIMiddleware)

# Include routers
app.include_router(health_router)  # Health check endpoints at root
app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "Agent Coordinator API", "docs": "/docs"}
