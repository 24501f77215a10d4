"""FastAPI application main file"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging

from permavid.config import settings
from permavid.database import SessionLocal, init_db
from permavid.queue_worker import QueueScheduler
from permavid.models.schemas import ApiResponse
from permavid.repository import QueueRepository
from permavid.routers import queue, settings as settings_router

# Configure logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    # Startup
    logger.info("Initializing database...")
    init_db()

    scheduler = None
    scheduler_task = None
    if settings.run_worker_in_api:
        scheduler = QueueScheduler(QueueRepository(SessionLocal))
        scheduler_task = asyncio.create_task(scheduler.run())
        logger.info("Queue scheduler running inside the API process")
    else:
        logger.info("Queue scheduler disabled here; run `python -m permavid.queue_worker`")
    app.state.scheduler = scheduler

    yield

    # Shutdown
    logger.info("Shutting down...")
    if scheduler is not None:
        await scheduler.shutdown()
        try:
            await asyncio.wait_for(scheduler_task, timeout=settings.busy_interval_seconds)
        except asyncio.TimeoutError:
            # Still inside a download; cancelling kills the extractor process
            scheduler_task.cancel()
            try:
                await scheduler_task
            except asyncio.CancelledError:
                pass


# Initialize FastAPI app
app = FastAPI(
    title="PermaVid API",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(queue.router)
app.include_router(settings_router.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": "PermaVid API", "version": "1.0.0"}


@app.get("/health", response_model=ApiResponse)
async def health():
    """Health check"""
    return ApiResponse(success=True, message="healthy", data={"status": "healthy"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("permavid.main:app", host="0.0.0.0", port=settings.api_port)
