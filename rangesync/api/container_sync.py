"""Container sync API endpoints."""

import json
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from rangesync.database.database import get_db
from rangesync.models.container_state import ContainerState
from rangesync.models.sync_run import SyncRun
from rangesync.services.container_state_service import ContainerStateService
from rangesync.services.sync_scheduler import ContainerSyncScheduler, get_scheduler

router = APIRouter(prefix="/api/container-sync", tags=["container-sync"])


class ContainerStateCreate(BaseModel):
    """Desired state declaration request."""

    asset_id: Optional[int] = None
    host_node_id: Optional[int] = None
    container_id: Optional[str] = None
    container_name: Optional[str] = None
    image_name: Optional[str] = None
    desired_status: str
    created_by: Optional[str] = None


class ContainerStateResponse(BaseModel):
    """Container state response."""

    id: int
    asset_id: Optional[int] = None
    host_node_id: Optional[int] = None
    container_id: Optional[str] = None
    container_name: Optional[str] = None
    image_name: Optional[str] = None
    desired_status: str
    current_status: str
    health_status: str
    sync_status: str
    status_description: str
    sync_attempts: int
    max_sync_attempts: int
    sync_error: Optional[str] = None
    last_sync_at: Optional[str] = None
    created_at: str
    updated_at: str
    created_by: Optional[str] = None


class StatisticsResponse(BaseModel):
    """Container state statistics response."""

    sync_status_stats: Dict[str, int]
    health_status_stats: Dict[str, int]
    total_states: int
    needing_reconciliation: int
    failed_syncs: int


class TaskStatusResponse(BaseModel):
    """Scheduler status response."""

    sync_in_progress: bool
    last_sync_time: Optional[str] = None
    last_sync_result: Optional[Dict[str, Any]] = None
    consecutive_failures: int
    max_consecutive_failures: int
    is_healthy: bool
    scheduler_running: bool


class SyncRunResponse(BaseModel):
    """Sync pass history entry."""

    id: int
    trigger: str
    status: str
    started_at: str
    completed_at: Optional[str] = None
    total_processed: int
    total_synced: int
    total_failed: int
    error_message: Optional[str] = None
    changes_summary: Optional[Dict[str, Any]] = None


def get_state_service(scheduler: ContainerSyncScheduler = Depends(get_scheduler)) -> ContainerStateService:
    """Get container state service bound to the scheduler's reconciler."""
    return scheduler.state_service


def state_to_response(state: ContainerState) -> ContainerStateResponse:
    return ContainerStateResponse(
        id=state.id,
        asset_id=state.asset_id,
        host_node_id=state.host_node_id,
        container_id=state.container_id,
        container_name=state.container_name,
        image_name=state.image_name,
        desired_status=state.desired_status,
        current_status=state.current_status,
        health_status=state.health_status,
        sync_status=state.sync_status,
        status_description=state.status_description(),
        sync_attempts=state.sync_attempts,
        max_sync_attempts=state.max_sync_attempts,
        sync_error=state.sync_error,
        last_sync_at=state.last_sync_at.isoformat() if state.last_sync_at else None,
        created_at=state.created_at.isoformat(),
        updated_at=state.updated_at.isoformat(),
        created_by=state.created_by,
    )


def run_to_response(run: SyncRun) -> SyncRunResponse:
    return SyncRunResponse(
        id=run.id,
        trigger=run.trigger,
        status=run.status,
        started_at=run.started_at.isoformat(),
        completed_at=run.completed_at.isoformat() if run.completed_at else None,
        total_processed=run.total_processed,
        total_synced=run.total_synced,
        total_failed=run.total_failed,
        error_message=run.error_message,
        changes_summary=json.loads(run.changes_summary) if run.changes_summary else None,
    )


@router.get("/statistics", response_model=StatisticsResponse)
async def get_statistics(
    db: Session = Depends(get_db),
    service: ContainerStateService = Depends(get_state_service)
):
    try:
        return StatisticsResponse(**service.get_statistics(db))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get statistics: {str(e)}")


@router.get("/task-status", response_model=TaskStatusResponse)
async def get_task_status(scheduler: ContainerSyncScheduler = Depends(get_scheduler)):
    return TaskStatusResponse(**scheduler.get_task_status())


@router.post("/trigger-sync", status_code=202)
async def trigger_sync(scheduler: ContainerSyncScheduler = Depends(get_scheduler)):
    """Start a sync pass in the background.

    Returns 409 if a pass is already running.
    """
    result = scheduler.trigger_manual_sync()
    if result == "already_running":
        return JSONResponse(
            status_code=409,
            content={"status": result, "message": "A container sync is already in progress"}
        )
    return {"status": result, "message": "Container sync started"}


@router.post("/reset-failed")
async def reset_failed(
    db: Session = Depends(get_db),
    service: ContainerStateService = Depends(get_state_service)
):
    """Give every failed record a fresh retry budget."""
    try:
        reset = service.reset_failed_states(db)
        return {"reset_count": len(reset), "state_ids": [state.id for state in reset]}
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to reset failed states: {str(e)}")


@router.post("/reset-failure-count")
async def reset_failure_count(scheduler: ContainerSyncScheduler = Depends(get_scheduler)):
    previous = scheduler.reset_failure_count()
    return {"previous_failures": previous, "consecutive_failures": 0}


@router.post("/force-sync-asset/{asset_id}")
async def force_sync_asset(
    asset_id: int,
    operator: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    service: ContainerStateService = Depends(get_state_service)
):
    """Reset and immediately reconcile every container of an asset."""
    try:
        return await service.force_sync_asset(db, asset_id, operator)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to force sync asset {asset_id}: {str(e)}")


@router.get("/asset/{asset_id}/states", response_model=List[ContainerStateResponse])
async def get_asset_states(
    asset_id: int,
    db: Session = Depends(get_db),
    service: ContainerStateService = Depends(get_state_service)
):
    return [state_to_response(state) for state in service.get_states_by_asset(db, asset_id)]


@router.get("/host/{host_id}/states", response_model=List[ContainerStateResponse])
async def get_host_states(
    host_id: int,
    db: Session = Depends(get_db),
    service: ContainerStateService = Depends(get_state_service)
):
    return [state_to_response(state) for state in service.get_states_by_host(db, host_id)]


@router.post("/states", response_model=ContainerStateResponse, status_code=201)
async def declare_state(
    request: ContainerStateCreate,
    db: Session = Depends(get_db),
    service: ContainerStateService = Depends(get_state_service)
):
    """Create or update the desired status of a container."""
    try:
        state = service.create_or_update_container_state(
            db,
            asset_id=request.asset_id,
            host_node_id=request.host_node_id,
            desired_status=request.desired_status,
            container_id=request.container_id,
            container_name=request.container_name,
            image_name=request.image_name,
            created_by=request.created_by,
        )
        return state_to_response(state)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        db.rollback()
        raise HTTPException(status_code=500, detail=f"Failed to save container state: {str(e)}")


@router.post("/states/{state_id}/reset", response_model=ContainerStateResponse)
async def reset_state(
    state_id: int,
    db: Session = Depends(get_db),
    service: ContainerStateService = Depends(get_state_service)
):
    try:
        return state_to_response(service.reset_state(db, state_id))
    except ValueError as e:
        status_code = 404 if "not found" in str(e) else 400
        raise HTTPException(status_code=status_code, detail=str(e))


@router.post("/cleanup")
async def cleanup(
    days_to_keep: int = Query(7, ge=0),
    db: Session = Depends(get_db),
    service: ContainerStateService = Depends(get_state_service)
):
    """Delete SYNCED records untouched for longer than days_to_keep."""
    try:
        deleted = service.cleanup_old_states(db, days_to_keep)
        return {"deleted_count": deleted, "days_to_keep": days_to_keep}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to clean up container states: {str(e)}")


@router.get("/history", response_model=List[SyncRunResponse])
async def get_history(
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
    scheduler: ContainerSyncScheduler = Depends(get_scheduler)
):
    return [run_to_response(run) for run in scheduler.get_sync_history(db, limit)]
