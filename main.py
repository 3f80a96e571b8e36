"""
FastAPI Application Entry Point

Integrates:
  - Device control API (create, pair, send, disconnect, status, sync)
  - Health checks
  - Middleware for logging & error handling

Run: uvicorn main:app --host 0.0.0.0 --port 3000
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import devices_router, get_manager
from config import Config
from bridge.lifecycle import SessionLifecycleManager
from infra.bootstrap import InfraBootstrap

# Setup logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan: startup and shutdown handlers.
    """
    # Startup
    bootstrap = InfraBootstrap.get_instance()
    logger.info("=" * 60)
    logger.info(f"{Config.SERVICE_NAME} starting up...")
    logger.info(f"Environment: {Config.ENVIRONMENT}")
    logger.info(f"Infrastructure: {bootstrap}")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info(f"{Config.SERVICE_NAME} shutting down...")
    await bootstrap.shutdown()
    InfraBootstrap.reset()


# Create FastAPI app
app = FastAPI(
    title="WhatsApp Bridge API",
    description="Multi-device WhatsApp bridge with external backend sync",
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict this in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Middleware for logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests."""
    logger.debug(f"{request.method} {request.url.path}")
    try:
        response = await call_next(request)
        return response
    except Exception as e:
        logger.error(f"Request error: {str(e)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "success": False},
        )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies use the same error shape as the routers."""
    logger.debug(f"Invalid request body for {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "success": False},
    )


# Include routers
app.include_router(devices_router)


@app.get("/")
async def root(manager: SessionLifecycleManager = Depends(get_manager)):
    """Service banner with the number of registered sessions."""
    return {
        "status": "online",
        "service": Config.SERVICE_NAME,
        "activeConnections": manager.active_connections,
    }


# Health check endpoints
@app.get("/health/live")
async def health_live():
    """Live health check (Kubernetes liveness probe)."""
    return {"status": "alive"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=Config.PORT,
    )
