"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docflow.api.routes import router
from docflow.config import get_settings
from docflow.database.session import close_db, init_db
from docflow.errors import DocflowError
from docflow.jobs.factory import close_job_queue, get_job_queue
from docflow.llm.router import close_router
from docflow.worker import Worker


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    # Initialize database
    if settings.environment == "development":
        await init_db()
        logger.info("Database initialized")

    # Without a broker nothing else can see the queue, so consume it here
    worker: Worker | None = None
    worker_task: asyncio.Task | None = None
    if settings.queue_backend == "memory":
        worker = Worker(get_job_queue(), settings=settings)
        worker_task = asyncio.create_task(worker.run())
        logger.info("In-process worker started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if worker is not None:
        worker.stop()
        await worker_task
        await close_router()
    await close_job_queue()
    await close_db()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Docflow API - DAG orchestration of document-improvement agents",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DocflowError)
async def docflow_error_handler(request: Request, exc: DocflowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Include routes
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docflow.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
