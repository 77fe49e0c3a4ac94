from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from kpi_gateway.core.config import settings
from kpi_gateway.core.errors import GatewayError
from kpi_gateway.core.logging import configure_logging, get_logger
from kpi_gateway.core.middleware import LoggingMiddleware, RequestIDMiddleware
from kpi_gateway.core.redis_client import check_redis_health, close_redis
from kpi_gateway.core.thingsboard import check_thingsboard_health, close_thingsboard
from kpi_gateway.api.v1 import telemetry


# Configure logging first
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan events.
    Runs on startup and shutdown.
    """
    logger.info("api_starting", env=settings.app_env)

    thingsboard_ok = await check_thingsboard_health()
    redis_ok = await check_redis_health()

    if not thingsboard_ok:
        logger.error("startup_warning", reason="ThingsBoard login failed", base_url=settings.thingsboard_base_url)
    if not redis_ok:
        logger.warning("startup_warning", reason="Redis connection failed, device list cache disabled")

    logger.info(
        "api_started",
        thingsboard=thingsboard_ok,
        redis=redis_ok,
        app_env=settings.app_env,
        subquery_timeout_seconds=settings.subquery_timeout_seconds,
    )

    yield

    logger.info("api_shutting_down")
    await close_thingsboard()
    await close_redis()
    logger.info("api_shutdown_complete")


app = FastAPI(
    title="KPI Gateway",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan
)


# Add middleware (order matters!)
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.app_env == "development" else [settings.app_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(telemetry.router, prefix="/api")


@app.get("/health")
async def health_check():
    """
    Health check endpoint.
    ThingsBoard is critical, Redis only backs the device list cache.

    Returns:
        Health status with dependency checks
    """
    thingsboard_healthy = await check_thingsboard_health()
    redis_healthy = await check_redis_health()

    return {
        "status": "healthy" if thingsboard_healthy else "unhealthy",
        "dependencies": {
            "thingsboard": "ok" if thingsboard_healthy else "error",
            "redis": "ok" if redis_healthy else "error",
        }
    }


@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError):
    """Render gateway errors as {success: false, error}."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_failed",
        path=request.url.path,
        status_code=exc.status_code,
        error_type=type(exc).__name__,
        error=exc.message,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message}
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle request validation errors.
    Returned as 400 in the same envelope as every other error.
    """
    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(x) for x in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })

    logger.warning(
        "validation_error",
        path=request.url.path,
        errors=errors
    )

    message = "; ".join(f"{e['field']}: {e['message']}" for e in errors) or "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": message,
            "details": errors
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Handle all unhandled exceptions.
    Logs full traceback and returns 500 error.
    """
    request_id = structlog.contextvars.get_contextvars().get("request_id", "unknown")

    logger.error(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "An unexpected error occurred",
            "request_id": request_id
        }
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "KPI Gateway",
        "version": "1.0.0",
        "status": "running"
    }
