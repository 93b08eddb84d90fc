from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import asyncio
import time
import logging
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import traceback

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from config import get_settings, get_cors_config

# Import logging and error tracking
from logging_config import setup_logging, set_request_context, clear_request_context
from sentry_integration import init_sentry, capture_exception

from database import init_db, close_db, get_engine
from identity import get_identity_service
from identity.router import router as identity_router
from identity.worker import MergeWorker
from middleware.internal_auth import SERVICE_NAME_HEADER, is_internal_auth_configured

settings = get_settings()

# JSON logs in production, plain text in development
setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.is_production,
    service_name="club-identity-core"
)
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN:
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.1 if settings.is_production else 0.0,
    )


def uses_sql_store() -> bool:
    return settings.IDENTITY_STORE_BACKEND == "sql"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    logger.info("=" * 60)
    logger.info("Starting Club Identity Core API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Identity store: {settings.IDENTITY_STORE_BACKEND}")
    logger.info("=" * 60)

    if uses_sql_store():
        try:
            await init_db()
            logger.info("PostgreSQL connection established")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    service = get_identity_service()
    worker = MergeWorker(
        merger=service.merger,
        linker=service.linker,
        poll_interval=settings.MERGE_WORKER_POLL_INTERVAL,
    )
    worker_task = asyncio.create_task(worker.run_continuous())

    logger.info("Club Identity Core API started successfully")

    yield

    logger.info("Shutting down Club Identity Core API...")
    worker.stop()
    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        pass
    if uses_sql_store():
        await close_db()


app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Identity resolution and account consolidation for club members.

    ## Features

    ### Identity (/api/identity)
    - Member id generation
    - Identity probing by email, phone and provider subject
    - Two-phase provider linking (Google and the like) keyed by phone
    - Password registration and login
    - Phone binding, merging phone-only duplicates
    - Resumable account merges with reference rewriting
    - Invariant audit
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

api_router = APIRouter(prefix="/api")


# ==================== HEALTH CHECK ENDPOINTS ====================

@api_router.get("/", tags=["Health"])
async def root():
    """Basic health check - returns 200 if service is running"""
    return {
        "message": "Club Identity Core API",
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@api_router.get("/health", tags=["Health"])
async def health_check():
    """
    Detailed health check for load balancers and uptime monitors.

    Returns:
    - 200: All systems operational
    - 503: Database unavailable (sql store only)
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
        "checks": {}
    }

    if uses_sql_store():
        try:
            from sqlalchemy import text

            async with get_engine().begin() as conn:
                result = await conn.execute(text("SELECT 1"))
                result.fetchone()

            health_status["checks"]["database"] = {
                "status": "connected",
                "type": "postgresql"
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            health_status["status"] = "unhealthy"
            health_status["checks"]["database"] = {
                "status": "disconnected",
                "error": str(e)
            }
    else:
        health_status["checks"]["database"] = {"status": "in_memory"}

    config_errors = settings.validate_production_config()
    health_status["checks"]["configuration"] = {
        "status": "invalid" if config_errors else "valid",
        "errors": len(config_errors)
    }
    health_status["checks"]["internal_auth"] = {
        "status": "configured" if is_internal_auth_configured() else "missing_keys"
    }

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    """
    Kubernetes liveness probe.
    Returns 200 if the process is running (doesn't check dependencies).
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(identity_router)

app.include_router(api_router)

# ==================== MIDDLEWARE ====================

cors_config = get_cors_config()
app.add_middleware(
    CORSMiddleware,
    **cors_config
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests with timing information"""
    start_time = time.time()

    request_id = request.headers.get("X-Request-ID", f"req-{int(start_time * 1000)}")
    set_request_context(request_id, request.headers.get(SERVICE_NAME_HEADER))

    if settings.debug_enabled:
        logger.debug(f"[{request_id}] {request.method} {request.url.path}")

    try:
        response = await call_next(request)

        process_time = time.time() - start_time

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        if settings.debug_enabled or response.status_code >= 400:
            logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")

        return response
    except Exception as e:
        logger.error(f"[{request_id}] Request failed: {str(e)}")
        raise
    finally:
        clear_request_context()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}")
    capture_exception(exc, path=request.url.path)
    if settings.debug_enabled:
        logger.error(traceback.format_exc())

    # Don't expose internal errors in production
    if settings.is_production:
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
        }
    )
