"""
Main FastAPI application for the CV Portal Chat service
"""

import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from api.analytics_endpoints import router as analytics_router
from api.chat_endpoints import router as chat_router
from api.dependencies import build_container_from_env
from api.portal_endpoints import router as portal_router
from chat.errors import PortalServiceError
from monitoring.metrics import get_metrics, inc as metrics_inc
from etl.logging_config import setup_logging_from_env

# Setup logging
setup_logging_from_env()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("Starting CV Portal Chat service...")

    try:
        app.state.container = await build_container_from_env()
        logger.info("Services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down CV Portal Chat service...")
    await app.state.container.close()


# Create FastAPI application
app = FastAPI(
    title="CV Portal Chat",
    description="Interactive CV portals: RAG-backed chat sessions, portal generation and analytics",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(portal_router)
app.include_router(chat_router)
app.include_router(analytics_router)


@app.exception_handler(PortalServiceError)
async def portal_error_handler(request: Request, exc: PortalServiceError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message} {exc.details}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    await metrics_inc("api_errors_total", labels={"code": exc.code})
    headers = None
    retry_after = getattr(exc, 'retry_after', None)
    if retry_after:
        headers = {"Retry-After": str(max(1, int(round(retry_after))))}
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": message, "code": "INVALID_INPUT"}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"}
    )


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "message": "CV Portal Chat API",
        "version": "1.0.0",
        "endpoints": {
            "generate": "/portal/generate",
            "chat": "/portal/{portalId}/chat",
            "analytics": "/portal/{portalId}/analytics",
            "docs": "/docs",
            "health": "/health"
        }
    }


# Health check endpoint
@app.get("/health")
async def health_check():
    """Global health check endpoint"""
    container = getattr(app.state, "container", None)
    return {
        "status": "healthy",
        "service": "CV Portal Chat",
        "version": "1.0.0",
        "ragEnabled": bool(container and container.retrieval_engine and container.response_generator),
        "builds": container.orchestrator.describe() if container else None,
    }


# Metrics endpoint (lightweight JSON for dashboards)
@app.get("/metrics")
async def metrics():
    return await get_metrics()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
