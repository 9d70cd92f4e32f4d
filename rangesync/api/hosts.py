"""Host node API endpoints."""

from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from rangesync.database.database import get_db
from rangesync.models.host_node import HostNode
from rangesync.services.encryption_service import EncryptionService
from rangesync.services.host_node_service import HostNodeService

router = APIRouter(prefix="/api/hosts", tags=["hosts"])


class HostCreate(BaseModel):
    """Host node creation request."""

    name: str
    docker_api_url: str
    api_token: Optional[str] = None
    scope_id: Optional[str] = None
    is_active: bool = True


class HostUpdate(BaseModel):
    """Host node update request."""

    name: Optional[str] = None
    docker_api_url: Optional[str] = None
    api_token: Optional[str] = None
    scope_id: Optional[str] = None
    is_active: Optional[bool] = None


class HostResponse(BaseModel):
    """Host node response."""

    id: int
    name: str
    docker_api_url: str
    has_api_token: bool
    scope_id: Optional[str] = None
    effective_scope_id: str
    is_active: bool
    probe_status: str
    probe_error: Optional[str] = None
    last_probed_at: Optional[str] = None
    created_at: str
    updated_at: str


class TestConnectionResponse(BaseModel):
    """Host connectivity test response."""

    host_id: int
    name: str
    docker_api_url: str
    reachable: bool


def get_host_service() -> HostNodeService:
    """Get host node service instance."""
    return HostNodeService(EncryptionService())


def to_response(host: HostNode) -> HostResponse:
    return HostResponse(
        id=host.id,
        name=host.name,
        docker_api_url=host.docker_api_url,
        has_api_token=bool(host.api_token_encrypted),
        scope_id=host.scope_id,
        effective_scope_id=host.effective_scope_id,
        is_active=bool(host.is_active),
        probe_status=host.probe_status,
        probe_error=host.probe_error,
        last_probed_at=host.last_probed_at.isoformat() if host.last_probed_at else None,
        created_at=host.created_at.isoformat(),
        updated_at=host.updated_at.isoformat(),
    )


@router.post("", response_model=HostResponse, status_code=201)
async def create_host(
    host: HostCreate,
    db: Session = Depends(get_db),
    service: HostNodeService = Depends(get_host_service)
):
    """Register a host node. The API token is encrypted at rest."""
    try:
        new_host = service.add_host(
            db=db,
            name=host.name,
            docker_api_url=host.docker_api_url,
            api_token=host.api_token,
            scope_id=host.scope_id,
            is_active=host.is_active,
        )
        return to_response(new_host)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to create host node: {str(e)}")


@router.get("", response_model=List[HostResponse])
async def list_hosts(
    db: Session = Depends(get_db),
    service: HostNodeService = Depends(get_host_service)
):
    try:
        return [to_response(host) for host in service.list_hosts(db)]
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to list host nodes: {str(e)}")


@router.get("/{host_id}", response_model=HostResponse)
async def get_host(
    host_id: int,
    db: Session = Depends(get_db),
    service: HostNodeService = Depends(get_host_service)
):
    host = service.get_host(db, host_id)
    if not host:
        raise HTTPException(status_code=404, detail=f"Host node {host_id} not found")
    return to_response(host)


@router.put("/{host_id}", response_model=HostResponse)
async def update_host(
    host_id: int,
    host_update: HostUpdate,
    db: Session = Depends(get_db),
    service: HostNodeService = Depends(get_host_service)
):
    """Update a host node. An empty api_token clears the stored token."""
    try:
        updated = service.update_host(db, host_id, **host_update.model_dump(exclude_unset=True))
        return to_response(updated)
    except ValueError as e:
        status_code = 404 if "not found" in str(e) else 400
        raise HTTPException(status_code=status_code, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to update host node: {str(e)}")


@router.delete("/{host_id}", status_code=204)
async def delete_host(
    host_id: int,
    db: Session = Depends(get_db),
    service: HostNodeService = Depends(get_host_service)
):
    try:
        deleted = service.delete_host(db, host_id)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to delete host node: {str(e)}")

    if not deleted:
        raise HTTPException(status_code=404, detail=f"Host node {host_id} not found")


@router.post("/{host_id}/test", response_model=TestConnectionResponse)
async def test_host(
    host_id: int,
    db: Session = Depends(get_db),
    service: HostNodeService = Depends(get_host_service)
):
    """Ping the host's Docker Engine API."""
    try:
        result = await service.test_connection(db, host_id)
        return TestConnectionResponse(**result)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to test host node: {str(e)}")
