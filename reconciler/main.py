"""
reconciler/main.py

Purpose: Application entry point

- Initializes FastAPI app
- Loads configuration and logging
- Builds the storage backend and the ReconciliationService
- Registers API routes (webhook, status, reconciliation, history, account)
- No business logic should be written here
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import time

from reconciler.core.config import settings, validate_settings
from reconciler.core.errors import add_exception_handlers
from reconciler.core.logging import setup_logging, get_logger
from reconciler.db import mongo
from reconciler.db.indexes import create_indexes
from reconciler.db.memory_store import InMemoryStore, InMemoryUserLocks
from reconciler.db.mongo_store import MongoStore, MongoUserLocks
from reconciler.services.reconciliation_service import ReconciliationService
from reconciler.api import webhook, status, reconciliation, history, account

# Initialize logging first
setup_logging()
logger = get_logger(__name__)

VERSION = "1.0.0"


async def build_service() -> ReconciliationService:
    """
    Connects the configured storage backend and wires the service around it.
    """
    if settings.STORAGE_BACKEND == "memory":
        logger.warning("⚠️ Using in-memory storage; nothing survives a restart")
        return ReconciliationService.from_settings(InMemoryStore(), InMemoryUserLocks(), settings)

    logger.info("Connecting to MongoDB...")
    await mongo.connect_to_mongo()
    logger.info("✅ MongoDB connected")

    logger.info("Creating database indexes...")
    await create_indexes()
    logger.info("✅ Database indexes created")

    store = MongoStore(
        mongo.get_client(),
        mongo.get_database(),
        use_transactions=settings.MONGODB_USE_TRANSACTIONS,
    )
    locks = MongoUserLocks(
        mongo.get_locks_collection(),
        lease_seconds=settings.USER_LOCK_LEASE_SECONDS,
    )
    return ReconciliationService.from_settings(store, locks, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("🚀 Starting reconciliation service...")

    try:
        logger.info("Validating configuration...")
        validate_settings()
        logger.info("✅ Configuration validated")

        app.state.reconciliation_service = await build_service()

        is_healthy = await app.state.reconciliation_service.store.ping()
        if not is_healthy:
            logger.warning("⚠️ Storage health check failed during startup")
        else:
            logger.info("✅ Storage health check passed")

        logger.info("🎉 Reconciliation service started successfully!")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        logger.info(f"Storage: {settings.STORAGE_BACKEND}")

    except Exception as e:
        logger.critical(f"Failed to start application: {str(e)}", exc_info=True)
        raise

    yield  # Application runs here

    logger.info("🛑 Shutting down reconciliation service...")

    try:
        app.state.reconciliation_service = None
        await mongo.close_mongo_connection()
        logger.info("👋 Reconciliation service shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {str(e)}", exc_info=True)


# Create FastAPI app with lifespan
app = FastAPI(
    title="Premium Reconciler",
    description="Razorpay payment and subscription reconciliation",
    version=VERSION,
    lifespan=lifespan,
    debug=settings.DEBUG,
    docs_url="/docs" if settings.is_development else None,  # Disable docs in production
    redoc_url="/redoc" if settings.is_development else None,
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add processing time header to all responses."""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    # Webhook deliveries time out at the gateway well before this
    if process_time > 5.0:
        logger.warning(
            f"Slow request detected: {request.method} {request.url.path}",
            extra={"process_time": process_time}
        )

    return response


add_exception_handlers(app)

# Register API routes
app.include_router(webhook.router, prefix=settings.API_PREFIX, tags=["Webhook"])
app.include_router(status.router, prefix=settings.API_PREFIX, tags=["Status"])
app.include_router(reconciliation.router, prefix=settings.API_PREFIX, tags=["Reconciliation"])
app.include_router(history.router, prefix=settings.API_PREFIX, tags=["History"])
app.include_router(account.router, prefix=settings.API_PREFIX, tags=["Account"])


# Root endpoint
@app.get("/", tags=["Health"])
async def root():
    """Root endpoint - basic info."""
    return {
        "name": "Premium Reconciler API",
        "version": VERSION,
        "description": "Razorpay payment and subscription reconciliation",
        "status": "running",
        "environment": settings.ENVIRONMENT
    }


async def _storage_healthy(request: Request) -> bool:
    service = getattr(request.app.state, "reconciliation_service", None)
    if service is None:
        return False
    return await service.store.ping()


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """
    Comprehensive health check endpoint.
    Checks storage connectivity.
    """
    health_status = {
        "status": "healthy",
        "timestamp": time.time(),
        "environment": settings.ENVIRONMENT,
        "version": VERSION,
        "checks": {"storage_backend": settings.STORAGE_BACKEND}
    }

    try:
        db_healthy = await _storage_healthy(request)
        health_status["checks"]["database"] = "healthy" if db_healthy else "unhealthy"

        if not db_healthy:
            health_status["status"] = "degraded"
    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        health_status["checks"]["database"] = "unhealthy"
        health_status["status"] = "unhealthy"

    status_code = 200 if health_status["status"] == "healthy" else 503
    return JSONResponse(content=health_status, status_code=status_code)


# Readiness check (for Kubernetes/orchestration)
@app.get("/ready", tags=["Health"])
async def readiness_check(request: Request):
    """
    Readiness check - indicates if app is ready to receive traffic.
    """
    try:
        if await _storage_healthy(request):
            return {"status": "ready"}
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "reason": "database_unavailable"}
        )
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "reason": str(e)}
        )


# Liveness check (for Kubernetes/orchestration)
@app.get("/live", tags=["Health"])
async def liveness_check():
    """
    Liveness check - indicates if app is alive.
    """
    return {"status": "alive"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "reconciler.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower()
    )
