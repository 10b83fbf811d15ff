"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.config import settings
from app.database import engine, get_db, async_session
from app.models import Base

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, wire the queue manager, recover interrupted runs."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    from app.services.batch_store import BatchStore
    from app.services.processor_registry import default_registry
    from app.services.processors import register_default_processors
    from app.services.queue_manager import QueueManager
    from app.services.recovery import recover_stale_items, resume_interrupted_jobs

    register_default_processors(default_registry)
    store = BatchStore(async_session)
    manager = QueueManager(store, default_registry)
    app.state.queue_manager = manager

    # Reset items orphaned by a previous crash, then restart their batch runs
    await recover_stale_items(store, settings.QUEUE_STALE_PROCESSING_MINUTES)
    await resume_interrupted_jobs(manager)

    yield

    # Cleanup
    await manager.shutdown()
    await engine.dispose()


app = FastAPI(
    title="Batch Queue API",
    version="1.0.0",
    description="Batch job queue with retry scheduling for video processing.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check():
    """Verify API and database connectivity."""
    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


# Register routers
from app.routes.batch_jobs import router as batch_jobs_router
app.include_router(batch_jobs_router)
