"""Host node service for managing container hosts."""

import logging
from datetime import datetime
from typing import List, Optional, Dict, Any
from sqlalchemy import or_
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from rangesync.models.host_node import HostNode
from rangesync.services.encryption_service import EncryptionService
from rangesync.services.docker_client import DockerEngineClient

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "docker_api_url", "scope_id", "is_active")


class HostNodeService:
    """Service for managing host nodes and their Docker API credentials."""

    def __init__(self, encryption_service: EncryptionService):
        """Initialize host node service.

        Args:
            encryption_service: Service for encrypting/decrypting API tokens.
        """
        self.encryption_service = encryption_service

    def add_host(
        self,
        db: Session,
        name: str,
        docker_api_url: str,
        api_token: Optional[str] = None,
        scope_id: Optional[str] = None,
        is_active: bool = True
    ) -> HostNode:
        """Register a new host node.

        Args:
            db: Database session.
            name: Unique host name.
            docker_api_url: Docker Engine API URL.
            api_token: Optional bearer token (will be encrypted).
            scope_id: Optional project grouping.
            is_active: Whether the host takes part in probes and reconciliation.

        Returns:
            The created HostNode instance.

        Raises:
            ValueError: If a host with the same name already exists.
        """
        host = HostNode(
            name=name,
            docker_api_url=docker_api_url.rstrip('/'),
            api_token_encrypted=self.encryption_service.encrypt(api_token) if api_token else None,
            scope_id=scope_id,
            is_active=is_active,
        )

        try:
            db.add(host)
            db.commit()
            db.refresh(host)
            logger.info(f"Host node '{name}' added successfully")
            return host
        except IntegrityError as e:
            db.rollback()
            logger.error(f"Failed to add host node '{name}': {e}")
            raise ValueError(f"Host node with name '{name}' already exists")

    def get_host(self, db: Session, host_id: int) -> Optional[HostNode]:
        return db.query(HostNode).filter(HostNode.id == host_id).first()

    def list_hosts(self, db: Session) -> List[HostNode]:
        return db.query(HostNode).order_by(HostNode.id).all()

    def list_active_hosts(self, db: Session) -> List[HostNode]:
        return db.query(HostNode).filter(HostNode.is_active == True).order_by(HostNode.id).all()  # noqa: E712

    def list_hosts_in_scope(self, db: Session, scope_id: str) -> List[HostNode]:
        """List active hosts probed under a scope.

        Hosts without an explicit scope are matched by their implicit
        "host-<id>" scope.
        """
        conditions = [HostNode.scope_id == scope_id]
        if scope_id.startswith("host-") and scope_id[5:].isdigit():
            conditions.append(
                (HostNode.scope_id.is_(None)) & (HostNode.id == int(scope_id[5:]))
            )

        return (
            db.query(HostNode)
            .filter(HostNode.is_active == True)  # noqa: E712
            .filter(or_(*conditions))
            .order_by(HostNode.id)
            .all()
        )

    def update_host(self, db: Session, host_id: int, **updates: Any) -> HostNode:
        """Update a host node.

        Args:
            db: Database session.
            host_id: Host node ID.
            **updates: Fields to change. ``api_token`` is re-encrypted;
                an empty string clears it.

        Raises:
            ValueError: If the host is not found or the new name is taken.
        """
        host = self.get_host(db, host_id)
        if not host:
            raise ValueError(f"Host node {host_id} not found")

        if "api_token" in updates:
            api_token = updates.pop("api_token")
            if api_token is not None:
                host.api_token_encrypted = self.encryption_service.encrypt(api_token) if api_token else None

        for field, value in updates.items():
            if field not in UPDATABLE_FIELDS:
                raise ValueError(f"Field '{field}' cannot be updated")
            if value is None:
                continue
            if field == "docker_api_url":
                value = value.rstrip('/')
            setattr(host, field, value)

        try:
            db.commit()
            db.refresh(host)
            logger.info(f"Host node {host_id} updated")
            return host
        except IntegrityError as e:
            db.rollback()
            logger.error(f"Failed to update host node {host_id}: {e}")
            raise ValueError(f"Host node with name '{host.name}' already exists")

    def delete_host(self, db: Session, host_id: int) -> bool:
        """Delete a host node.

        Returns:
            True if the host was deleted, False if it did not exist.
        """
        host = self.get_host(db, host_id)
        if not host:
            return False

        db.delete(host)
        db.commit()
        logger.info(f"Host node {host_id} deleted")
        return True

    def get_decrypted_token(self, db: Session, host_id: int) -> Optional[str]:
        host = self.get_host(db, host_id)
        if not host or not host.api_token_encrypted:
            return None
        return self.encryption_service.decrypt(host.api_token_encrypted)

    def record_probe(self, db: Session, host: HostNode, error: Optional[str] = None) -> None:
        """Stamp the outcome of a probe on a host (caller commits)."""
        host.probe_status = "failed" if error else "success"
        host.probe_error = error
        host.last_probed_at = datetime.utcnow()

    async def test_connection(self, db: Session, host_id: int) -> Dict[str, Any]:
        """Ping a host's Docker API.

        Raises:
            ValueError: If the host is not found.
        """
        host = self.get_host(db, host_id)
        if not host:
            raise ValueError(f"Host node {host_id} not found")

        async with DockerEngineClient(
            base_url=host.docker_api_url,
            api_token=self.get_decrypted_token(db, host_id)
        ) as client:
            reachable = await client.ping()

        return {
            "host_id": host.id,
            "name": host.name,
            "docker_api_url": host.docker_api_url,
            "reachable": reachable,
        }
