"""Container discovery API endpoints."""

from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from rangesync.database.database import get_db
from rangesync.services.discovery_service import DiscoveryService
from rangesync.services.encryption_service import EncryptionService
from rangesync.services.host_node_service import HostNodeService
from rangesync.services.sync_scheduler import ContainerSyncScheduler, get_scheduler

router = APIRouter(prefix="/api/discovery", tags=["discovery"])


class DiffResponse(BaseModel):
    """Inventory changes applied by a probe."""

    added: List[str]
    updated: List[str]
    removed: List[str]
    duplicates: List[str]


class ProbeResponse(BaseModel):
    """Scope probe response."""

    scope_id: str
    success: bool
    diff: Optional[DiffResponse] = None
    errors: Dict[str, str]
    hosts_probed: int
    containers_observed: int


class DiscoveryRecordResponse(BaseModel):
    """Discovered container response."""

    id: int
    scope_id: str
    container_id: str
    container_name: Optional[str] = None
    image: Optional[str] = None
    status: Optional[str] = None
    ports: Optional[str] = None
    labels: Optional[str] = None
    asset_id: Optional[int] = None
    asset_name: Optional[str] = None
    asset_ip: Optional[str] = None
    discovered_at: Optional[str] = None
    last_seen_at: Optional[str] = None


def get_discovery_service(scheduler: ContainerSyncScheduler = Depends(get_scheduler)) -> DiscoveryService:
    """Get discovery service sharing the scheduler's runtime driver."""
    return DiscoveryService(
        driver=scheduler.reconciler.driver,
        host_service=HostNodeService(EncryptionService()),
        state_service=scheduler.state_service,
    )


@router.post("/{scope_id}/probe", response_model=ProbeResponse)
async def probe_scope(
    scope_id: str,
    db: Session = Depends(get_db),
    service: DiscoveryService = Depends(get_discovery_service)
):
    """Probe every active host of a scope and update the inventory.

    The inventory is left untouched when any host probe fails.
    """
    try:
        result = await service.probe_scope(db, scope_id)
        return ProbeResponse(**result.to_dict())
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to probe scope {scope_id}: {str(e)}")


@router.get("/{scope_id}/records", response_model=List[DiscoveryRecordResponse])
async def list_records(
    scope_id: str,
    db: Session = Depends(get_db),
    service: DiscoveryService = Depends(get_discovery_service)
):
    records = service.list_records(db, scope_id)
    return [
        DiscoveryRecordResponse(
            id=record.id,
            scope_id=record.scope_id,
            container_id=record.container_id,
            container_name=record.container_name,
            image=record.image,
            status=record.status,
            ports=record.ports,
            labels=record.labels,
            asset_id=record.asset_id,
            asset_name=record.asset_name,
            asset_ip=record.asset_ip,
            discovered_at=record.discovered_at.isoformat() if record.discovered_at else None,
            last_seen_at=record.last_seen_at.isoformat() if record.last_seen_at else None,
        )
        for record in records
    ]
