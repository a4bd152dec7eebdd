"""Main application entry point."""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from calsync.config import settings
from calsync.dependencies import shutdown_services
from calsync.middleware import PrometheusMiddleware
from calsync.routers import calendar_sync, events
from calsync.services.metrics import get_metrics_text, init_metrics
from calsync.utils.logger import setup_logging

APP_VERSION = "0.1.0"

# Setup logging
setup_logging(settings.log_level, json_logs=settings.app_env == "production")
logger = structlog.get_logger()

# Create FastAPI application
app = FastAPI(
    title="Calendar Sync",
    description="Two-way Google Calendar and Outlook synchronization",
    version=APP_VERSION,
    debug=settings.debug,
)

# Parse CORS origins from config (comma-separated string)
allowed_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]

# Allow localhost/127.0.0.1 in development mode
if settings.debug:
    allowed_origins.extend([
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
app.add_middleware(PrometheusMiddleware)

# Include routers
app.include_router(calendar_sync.router)
app.include_router(events.router)


# ==================== Error responses ====================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render every HTTP error as {"error": "..."}."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"error": message.removeprefix("Value error, ")}
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception",
                path=request.url.path,
                method=request.method,
                error=str(exc),
                exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.on_event("startup")
async def startup_event():
    """Application startup event."""
    logger.info(
        "application_started",
        environment=settings.app_env,
        debug=settings.debug,
    )
    init_metrics(settings.app_env, APP_VERSION)


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event."""
    shutdown_services()
    logger.info("application_shutdown_complete")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "version": APP_VERSION}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(
        content=get_metrics_text(),
        media_type="text/plain; charset=utf-8"
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Calendar Sync API",
        "version": APP_VERSION,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "calsync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
