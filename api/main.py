"""
FastAPI server for Blockflow.

Provides REST API endpoints for:
- Listing the built-in block types
- Serializing a workflow graph into an execution plan
- Running a draft workflow

Usage:
    uvicorn api.main:app --host 0.0.0.0 --port 2024 --reload
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.router import router
from shared.config import config
from shared.error_handling import create_error_response
from shared.logger import get_logger

logger = get_logger("api.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting Blockflow API server (failure policy: %s)", config.failure_policy.value)
    yield
    logger.info("Blockflow API server shutting down")


app = FastAPI(
    title="Blockflow API",
    description="Compile and run block workflows",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all so clients always receive the standard error payload."""
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=create_error_response("Internal server error", exc if config.log_level.upper() == "DEBUG" else None),
    )


@app.get("/health")
async def health():
    return {"status": "ok"}
