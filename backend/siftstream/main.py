"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from siftstream.core.config import settings
from siftstream.core.database import init_db, close_db
from siftstream.core.logging import configure_logging, get_logger, set_request_context, clear_request_context
from siftstream.core.metrics import get_metrics, MetricsMiddleware
from siftstream.core.exceptions import AppError, ValidationError
from siftstream.api import analysis, health, models

# Configure structured logging
configure_logging(
    log_level=settings.log_level,
    json_format=settings.log_format == "json",
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(
        "Starting SIFT Stream backend...",
        extra={
            "version": settings.version,
            "environment": settings.environment,
            "providers": ",".join(settings.configured_providers) or "none",
        },
    )

    if not settings.configured_providers:
        logger.warning("No AI provider API keys configured; every analysis will be refused")

    if settings.persistence_enabled:
        try:
            await init_db()
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            if settings.is_production:
                raise RuntimeError(f"Database initialization failed in production: {e}")

    yield

    try:
        await close_db()
    except Exception as e:
        logger.error(f"Error closing database connections: {e}")

    logger.info("Shutting down SIFT Stream backend...")


# Create FastAPI app
app = FastAPI(
    title="SIFT Stream API",
    description="Streaming SIFT fact-check analyses and follow-up chat",
    version=settings.version,
    lifespan=lifespan,
)


# ============ Exception Handlers ============


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle application errors with structured response."""
    if exc.http_status >= 500:
        logger.error(f"{exc.code.value}: {exc.message}", extra={"path": request.url.path})
    get_metrics().record_error(exc.code.value, "api")
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(include_details=not settings.is_production),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render malformed request bodies in the same shape as other validation errors."""
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    error = ValidationError(message="Invalid request body", details={"errors": errors})
    return JSONResponse(
        status_code=error.http_status,
        content=error.to_dict(include_details=True),
    )


# ============ Middleware ============


# Add metrics middleware (outermost to capture all requests)
app.add_middleware(MetricsMiddleware)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============ Request Context Middleware ============


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Callable):
    """Add request context for logging."""
    request_id = set_request_context(request_id=request.headers.get("X-Request-ID"))
    request.state.request_id = request_id

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        clear_request_context()


# ============ Include Routers ============

app.include_router(health.router)
app.include_router(analysis.router)
app.include_router(models.router)


# ============ Root Endpoint ============


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "SIFT Stream API",
        "version": settings.version,
        "status": "running",
        "environment": settings.environment,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "siftstream.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
    )
