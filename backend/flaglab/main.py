"""Main FastAPI application."""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from flaglab.config import get_settings
from flaglab.middleware.logging import LoggingMiddleware, get_logger
from flaglab.api import evaluation, experiments, flags, health
from flaglab.database import engine, Base
from flaglab.exceptions import (
    FlagLabError, DefinitionNotFound, ValidationError, NotRunning, NotEligible, StoreUnavailable
)
from flaglab.services.evaluation_cache import build_evaluation_cache
import flaglab.models  # noqa: F401  registers tables on Base.metadata

settings = get_settings()
logger = get_logger()

ERROR_STATUS_CODES = {
    DefinitionNotFound: 404,
    ValidationError: 422,
    NotRunning: 409,
    NotEligible: 403,
    StoreUnavailable: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup
    Base.metadata.create_all(bind=engine)
    logger.info("database_tables_ready")

    app.state.evaluation_cache = build_evaluation_cache(settings)
    logger.info("evaluation_cache_ready", backend=settings.evaluation_cache_backend)

    yield  # App runs here

    # Shutdown
    logger.info("shutting_down", service=settings.app_name)

# Create FastAPI app
app = FastAPI(
    title="FlagLab",
    description="Multi-tenant feature flag evaluation and A/B experimentation service",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# CORS middleware - Allow frontend origins
allowed_origins = [
    "http://localhost:5173",  # Local development
    "http://localhost:3000",  # Alternative local port
    settings.frontend_url,     # Admin frontend
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Trace-ID"]
)

# Logging middleware
app.add_middleware(LoggingMiddleware)


@app.exception_handler(FlagLabError)
async def flaglab_error_handler(request: Request, exc: FlagLabError):
    """Map service errors to HTTP status codes."""
    status_code = 500
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    log = logger.error if status_code >= 500 else logger.warning
    log("request_rejected", error=str(exc), error_type=type(exc).__name__, status_code=status_code)

    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__}
    )


# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(flags.router, tags=["flags"])
app.include_router(evaluation.router, tags=["evaluation"])
app.include_router(experiments.router, tags=["experiments"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": "0.1.0",
        "docs": "/docs" if settings.debug else "disabled",
        "endpoints": {
            "health": "/health",
            "flags": "/flags",
            "evaluate": "POST /evaluate",
            "experiments": "/experiments"
        }
    }


# uvicorn flaglab.main:app --reload
