"""Discovery service for keeping the container inventory in line with probes."""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Optional, Dict, Any
from urllib.parse import urlparse
from sqlalchemy.orm import Session

from rangesync.models.container_state import ContainerState
from rangesync.models.discovery_record import ContainerDiscoveryRecord
from rangesync.services.container_state_service import ContainerStateService
from rangesync.services.host_node_service import HostNodeService
from rangesync.services.runtime_driver import ContainerObservation, RuntimeDriver, RuntimeDriverError

logger = logging.getLogger(__name__)

# Fields whose change marks a discovery record as updated
TRACKED_FIELDS = {
    "status": "status",
    "container_name": "name",
    "image": "image",
    "ports": "ports",
    "labels": "labels",
}


@dataclass
class DiscoveryDiff:
    """Container IDs added, updated and removed by one diff."""

    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.updated or self.removed)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProbeResult:
    """Outcome of probing every host of a scope."""

    scope_id: str
    success: bool
    diff: Optional[DiscoveryDiff] = None
    errors: Dict[str, str] = field(default_factory=dict)
    hosts_probed: int = 0
    containers_observed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope_id": self.scope_id,
            "success": self.success,
            "diff": self.diff.to_dict() if self.diff else None,
            "errors": self.errors,
            "hosts_probed": self.hosts_probed,
            "containers_observed": self.containers_observed,
        }


def is_container_suitable(observation: ContainerObservation) -> bool:
    """Exclude runtime system containers (pause, coredns, Docker Desktop)."""
    if observation.name:
        name = observation.name.lower()
        if name.startswith("k8s_pause") or name.startswith("k8s_coredns"):
            return False
        if "docker-desktop" in name or "com.docker." in name:
            return False

    if observation.image:
        image = observation.image.lower()
        if image.startswith("k8s.gcr.io/pause") or image.startswith("registry.k8s.io/pause"):
            return False

    return True


class DiscoveryService:
    """Service for probing hosts and diffing what they report against the inventory."""

    def __init__(
        self,
        driver: RuntimeDriver,
        host_service: HostNodeService,
        state_service: Optional[ContainerStateService] = None
    ):
        """Initialize discovery service.

        Args:
            driver: Runtime driver used to list containers.
            host_service: Host node service (scope lookup, probe bookkeeping).
            state_service: Container state service that receives observations.
        """
        self.driver = driver
        self.host_service = host_service
        self.state_service = state_service or ContainerStateService()

    def diff(
        self,
        db: Session,
        scope_id: str,
        observed: List[ContainerObservation],
        asset_links: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> DiscoveryDiff:
        """Reconcile the stored inventory of a scope with one complete probe.

        Must only be called with the result of a probe that covered the whole
        scope; anything not observed is deleted.

        Args:
            db: Database session.
            scope_id: Scope that was probed.
            observed: Every container seen in the scope.
            asset_links: Optional asset_id/asset_name/asset_ip per container ID.

        Returns:
            DiscoveryDiff with the affected container IDs.
        """
        asset_links = asset_links or {}
        result = DiscoveryDiff()

        latest: Dict[str, ContainerObservation] = {}
        for observation in observed:
            if not observation.container_id:
                continue
            if observation.container_id in latest:
                logger.warning(
                    f"Duplicate container {observation.container_id} observed in scope {scope_id}; "
                    f"keeping the last observation"
                )
                if observation.container_id not in result.duplicates:
                    result.duplicates.append(observation.container_id)
            latest[observation.container_id] = observation

        stored = {
            record.container_id: record
            for record in db.query(ContainerDiscoveryRecord)
            .filter(ContainerDiscoveryRecord.scope_id == scope_id)
            .all()
        }

        now = datetime.utcnow()

        try:
            for container_id, observation in latest.items():
                record = stored.get(container_id)
                link = asset_links.get(container_id, {})

                if record is None:
                    record = ContainerDiscoveryRecord(
                        scope_id=scope_id,
                        container_id=container_id,
                        container_name=observation.name,
                        image=observation.image,
                        status=observation.status,
                        ports=observation.ports,
                        labels=observation.labels,
                        asset_id=link.get("asset_id"),
                        asset_name=link.get("asset_name"),
                        asset_ip=link.get("asset_ip"),
                        created_at=now,
                        discovered_at=now,
                        last_seen_at=now,
                    )
                    db.add(record)
                    result.added.append(container_id)
                    continue

                changed = False
                for column, attribute in TRACKED_FIELDS.items():
                    value = getattr(observation, attribute)
                    if getattr(record, column) != value:
                        setattr(record, column, value)
                        changed = True
                for column in ("asset_id", "asset_name", "asset_ip"):
                    if link.get(column) is not None:
                        setattr(record, column, link[column])
                record.last_seen_at = now

                if changed:
                    result.updated.append(container_id)

            removed = [container_id for container_id in stored if container_id not in latest]
            if removed:
                (
                    db.query(ContainerDiscoveryRecord)
                    .filter(
                        ContainerDiscoveryRecord.scope_id == scope_id,
                        ContainerDiscoveryRecord.container_id.in_(removed),
                    )
                    .delete(synchronize_session=False)
                )
                result.removed = removed

            db.commit()
        except Exception:
            db.rollback()
            logger.exception(f"Discovery diff for scope {scope_id} failed; inventory left unchanged")
            raise

        logger.info(
            f"Discovery diff for scope {scope_id}: {len(result.added)} added, "
            f"{len(result.updated)} updated, {len(result.removed)} removed"
        )
        return result

    async def probe_scope(self, db: Session, scope_id: str) -> ProbeResult:
        """Probe every active host of a scope and apply the result.

        A scope is only diffed when every host answered; a partial probe
        would otherwise be read as removals.
        """
        hosts = self.host_service.list_hosts_in_scope(db, scope_id)
        result = ProbeResult(scope_id=scope_id, success=False)

        if not hosts:
            result.errors[scope_id] = f"No active host nodes in scope {scope_id}"
            logger.warning(result.errors[scope_id])
            return result

        observed: List[ContainerObservation] = []
        for host in hosts:
            try:
                containers = await self.driver.probe_containers(host)
            except RuntimeDriverError as e:
                result.errors[host.name] = str(e)
                self.host_service.record_probe(db, host, error=str(e))
                logger.warning(f"Probe of host {host.name} in scope {scope_id} failed: {e}")
                continue

            self.host_service.record_probe(db, host)
            for container in containers:
                if is_container_suitable(container):
                    observed.append(container)
                else:
                    logger.debug(f"Skipping system container {container.name} on host {host.name}")

        result.hosts_probed = len(hosts)
        result.containers_observed = len(observed)

        if result.errors:
            db.commit()
            logger.warning(f"Probe of scope {scope_id} incomplete; inventory not updated")
            return result

        result.diff = self.diff(db, scope_id, observed, self._asset_links(db, hosts, observed))
        self.apply_observations(db, observed)
        result.success = True
        return result

    def apply_observations(self, db: Session, observed: List[ContainerObservation]) -> int:
        """Feed observed statuses into matching container state records.

        Returns:
            Number of container state records updated.
        """
        updated = 0
        for observation in observed:
            if observation.host_node_id is None:
                continue
            states = self.state_service.apply_observation(
                db,
                host_node_id=observation.host_node_id,
                container_id=observation.container_id,
                current_status=observation.current_status,
                health_status=observation.health,
                container_name=observation.name,
                image_name=observation.image,
            )
            updated += len(states)
        db.commit()
        return updated

    @staticmethod
    def _asset_links(db: Session, hosts, observed: List[ContainerObservation]) -> Dict[str, Dict[str, Any]]:
        addresses = {host.id: urlparse(host.docker_api_url).hostname for host in hosts}
        links: Dict[str, Dict[str, Any]] = {}

        container_ids = [observation.container_id for observation in observed]
        states = (
            db.query(ContainerState)
            .filter(ContainerState.container_id.in_(container_ids))
            .all()
        ) if container_ids else []
        asset_ids = {
            (state.host_node_id, state.container_id): state.asset_id
            for state in states
        }

        for observation in observed:
            links[observation.container_id] = {
                "asset_id": asset_ids.get((observation.host_node_id, observation.container_id)),
                "asset_ip": addresses.get(observation.host_node_id),
            }
        return links

    def list_records(self, db: Session, scope_id: str) -> List[ContainerDiscoveryRecord]:
        return (
            db.query(ContainerDiscoveryRecord)
            .filter(ContainerDiscoveryRecord.scope_id == scope_id)
            .order_by(ContainerDiscoveryRecord.id)
            .all()
        )
