"""Main FastAPI application entry point."""

import logging
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from rangesync import __version__
from rangesync.config import settings
from rangesync.database.database import init_db, get_db
from rangesync.api.container_sync import router as container_sync_router
from rangesync.api.discovery import router as discovery_router
from rangesync.api.hosts import router as hosts_router
from rangesync.models.container_state import ContainerState, SyncStatus
from rangesync.models.discovery_record import ContainerDiscoveryRecord
from rangesync.models.host_node import HostNode
from rangesync.models.sync_run import SyncRun
from rangesync.services.encryption_service import EncryptionService
from rangesync.services.sync_scheduler import ContainerSyncScheduler, get_scheduler

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Range Sync",
    description="Desired-state reconciliation for cyber-range containers",
    version=__version__,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(container_sync_router)
app.include_router(discovery_router)
app.include_router(hosts_router)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    encryption: str
    scheduler: str
    message: Optional[str] = None


class StatsResponse(BaseModel):
    """System statistics response."""

    host_nodes_count: int
    active_host_nodes_count: int
    container_states_count: int
    failed_states_count: int
    discovery_records_count: int
    sync_runs_count: int
    last_sync_status: Optional[str] = None


@app.on_event("startup")
async def startup_event():
    """Configure logging, validate encryption, initialize the database and start the scheduler."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Validate encryption service (will exit if key is invalid)
    EncryptionService()
    init_db()

    if settings.sync_scheduler_enabled:
        get_scheduler().start()
    else:
        logger.info("Container sync scheduler disabled")


@app.on_event("shutdown")
async def shutdown_event():
    scheduler = get_scheduler()
    if scheduler.is_running:
        await scheduler.stop()


@app.get("/")
async def root():
    return {"message": "Range Sync API", "version": __version__}


@app.get("/api/health", response_model=HealthResponse)
async def health_check(
    db: Session = Depends(get_db),
    scheduler: ContainerSyncScheduler = Depends(get_scheduler)
):
    """Health check endpoint.

    Checks database connectivity, encryption key validity and the sync
    circuit breaker.
    """
    health_status = {
        "status": "healthy",
        "database": "connected",
        "encryption": "valid",
        "scheduler": "healthy",
    }

    try:
        # Test database connectivity
        db.execute(text("SELECT 1"))

        # Test encryption service
        encryption_service = EncryptionService()
        if encryption_service.decrypt(encryption_service.encrypt("test")) != "test":
            health_status["encryption"] = "invalid"
            health_status["status"] = "unhealthy"
            health_status["message"] = "Encryption service validation failed"

        task_status = scheduler.get_task_status()
        if not task_status["is_healthy"]:
            health_status["scheduler"] = "circuit_open"
            health_status["status"] = "degraded"
            health_status["message"] = (
                f"Container sync paused after {task_status['consecutive_failures']} consecutive failures"
            )

        return HealthResponse(**health_status)

    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["database"] = "disconnected"
        health_status["message"] = str(e)
        return HealthResponse(**health_status)


@app.get("/api/stats", response_model=StatsResponse)
async def get_stats(db: Session = Depends(get_db)):
    """Get system statistics."""
    try:
        last_sync = db.query(SyncRun).order_by(SyncRun.started_at.desc()).first()

        return StatsResponse(
            host_nodes_count=db.query(HostNode).count(),
            active_host_nodes_count=db.query(HostNode).filter(HostNode.is_active == True).count(),  # noqa: E712
            container_states_count=db.query(ContainerState).count(),
            failed_states_count=db.query(ContainerState).filter(
                ContainerState.sync_status == SyncStatus.FAILED.value
            ).count(),
            discovery_records_count=db.query(ContainerDiscoveryRecord).count(),
            sync_runs_count=db.query(SyncRun).count(),
            last_sync_status=last_sync.status if last_sync else None,
        )

    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get stats: {str(e)}")
