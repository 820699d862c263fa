"""
UPC Conflict Engine API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from core.config import get_settings
from core.errors import ConflictEngineError
from events.broadcaster import get_broadcaster

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("UPC Conflict Engine API starting up", version=settings.app_version)
    yield
    await get_broadcaster().close()
    logger.info("UPC Conflict Engine API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="UPC / product identifier conflict detection and review workflow",
    lifespan=lifespan,
)


@app.exception_handler(ConflictEngineError)
async def engine_error_handler(request: Request, exc: ConflictEngineError):
    """Map engine errors to their HTTP status with a stable error code."""
    if exc.status_code >= 500:
        logger.error("api.engine_error", path=request.url.path, code=exc.code, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import analyses, conflicts
from events.websocket import router as ws_router

app.include_router(conflicts.router)
app.include_router(analyses.router)
app.include_router(ws_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for Cloud Run / load balancers."""
    return {"status": "healthy", "version": settings.app_version}
