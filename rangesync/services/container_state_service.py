"""Container state service for managing desired-state records."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from rangesync.config import settings
from rangesync.models.container_state import (
    ContainerState,
    HealthStatus,
    SyncStatus,
)

logger = logging.getLogger(__name__)


class ContainerStateService:
    """Service for creating, querying and maintaining container state records."""

    def __init__(self, reconciler=None):
        """Initialize container state service.

        Args:
            reconciler: Reconciler used by force_sync_asset (optional).
        """
        self.reconciler = reconciler

    def create_or_update_container_state(
        self,
        db: Session,
        asset_id: Optional[int],
        host_node_id: Optional[int],
        desired_status: str,
        container_id: Optional[str] = None,
        container_name: Optional[str] = None,
        image_name: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> ContainerState:
        """Declare the desired status of a container.

        An existing record is matched by asset and container ID (or by
        asset and container name for containers not deployed yet).

        Raises:
            ValueError: If desired_status is not a valid DesiredStatus.
        """
        query = db.query(ContainerState).filter(ContainerState.asset_id == asset_id)
        if container_id:
            query = query.filter(ContainerState.container_id == container_id)
        elif container_name:
            query = query.filter(
                ContainerState.container_id.is_(None),
                ContainerState.container_name == container_name
            )
        else:
            query = None

        state = query.with_for_update().first() if query is not None else None

        if state:
            state.set_desired_status(desired_status)
            if host_node_id is not None:
                state.host_node_id = host_node_id
            if container_name:
                state.container_name = container_name
            if image_name:
                state.image_name = image_name
            logger.info(f"Updated container state {state.id}: desired={state.desired_status}")
        else:
            state = ContainerState(
                asset_id=asset_id,
                host_node_id=host_node_id,
                container_id=container_id,
                container_name=container_name,
                image_name=image_name,
                desired_status=desired_status,
                created_by=created_by,
            )
            db.add(state)
            logger.info(f"Created container state for asset {asset_id}: desired={state.desired_status}")

        db.commit()
        db.refresh(state)
        return state

    def get_state(self, db: Session, state_id: int) -> Optional[ContainerState]:
        return db.query(ContainerState).filter(ContainerState.id == state_id).first()

    def set_desired_status(self, db: Session, state_id: int, desired_status: str) -> ContainerState:
        """Change the convergence goal of a record.

        Raises:
            ValueError: If the record is not found or the status is invalid.
        """
        state = (
            db.query(ContainerState)
            .filter(ContainerState.id == state_id)
            .with_for_update()
            .first()
        )
        if not state:
            raise ValueError(f"Container state {state_id} not found")

        state.set_desired_status(desired_status)
        db.commit()
        db.refresh(state)
        return state

    # Queries

    def get_states_by_asset(self, db: Session, asset_id: int) -> List[ContainerState]:
        return db.query(ContainerState).filter(ContainerState.asset_id == asset_id).order_by(ContainerState.id).all()

    def get_states_by_host(self, db: Session, host_node_id: int) -> List[ContainerState]:
        return db.query(ContainerState).filter(ContainerState.host_node_id == host_node_id).order_by(ContainerState.id).all()

    def get_states_by_container_id(self, db: Session, container_id: str) -> List[ContainerState]:
        return db.query(ContainerState).filter(ContainerState.container_id == container_id).all()

    def get_states_by_creator(self, db: Session, created_by: str) -> List[ContainerState]:
        return db.query(ContainerState).filter(ContainerState.created_by == created_by).all()

    def get_states_created_between(self, db: Session, start: datetime, end: datetime) -> List[ContainerState]:
        return (
            db.query(ContainerState)
            .filter(ContainerState.created_at.between(start, end))
            .order_by(ContainerState.created_at)
            .all()
        )

    def get_states_not_synced_since(self, db: Session, threshold: datetime) -> List[ContainerState]:
        """Records never synced, or last synced before threshold."""
        return (
            db.query(ContainerState)
            .filter(or_(ContainerState.last_sync_at.is_(None), ContainerState.last_sync_at < threshold))
            .all()
        )

    def get_states_by_sync_status(self, db: Session, sync_status: str) -> List[ContainerState]:
        sync_status = SyncStatus(sync_status).value
        return db.query(ContainerState).filter(ContainerState.sync_status == sync_status).all()

    def get_states_by_health_status(self, db: Session, health_status: str) -> List[ContainerState]:
        health_status = HealthStatus(health_status).value
        return db.query(ContainerState).filter(ContainerState.health_status == health_status).all()

    def find_needing_reconciliation(
        self,
        db: Session,
        host_node_id: Optional[int] = None
    ) -> List[ContainerState]:
        """Records whose desired status differs from the observed one and
        that still have retry budget, excluding attempts in flight."""
        query = db.query(ContainerState).filter(
            ContainerState.desired_status != ContainerState.current_status,
            ContainerState.sync_status != SyncStatus.SYNCING.value,
            ContainerState.sync_attempts < ContainerState.max_sync_attempts,
        )
        if host_node_id is not None:
            query = query.filter(ContainerState.host_node_id == host_node_id)
        return query.order_by(ContainerState.id).all()

    def find_failed_syncs(self, db: Session) -> List[ContainerState]:
        """Records out of retry budget, excluding attempts still in flight."""
        return (
            db.query(ContainerState)
            .filter(
                or_(
                    ContainerState.sync_status == SyncStatus.FAILED.value,
                    ContainerState.sync_attempts >= ContainerState.max_sync_attempts,
                ),
                ContainerState.sync_status != SyncStatus.SYNCING.value,
            )
            .all()
        )

    def find_stale_syncing(self, db: Session, older_than_seconds: int) -> List[ContainerState]:
        threshold = datetime.utcnow() - timedelta(seconds=older_than_seconds)
        return (
            db.query(ContainerState)
            .filter(
                ContainerState.sync_status == SyncStatus.SYNCING.value,
                or_(ContainerState.last_sync_at.is_(None), ContainerState.last_sync_at < threshold),
            )
            .all()
        )

    # Maintenance

    def recover_stale_syncing(self, db: Session, older_than_seconds: Optional[int] = None) -> int:
        """Conclude attempts stuck in SYNCING as failed.

        Args:
            db: Database session.
            older_than_seconds: Age of last_sync_at after which an attempt is
                considered abandoned (defaults to the stale threshold setting,
                or the sync interval when unset).

        Returns:
            Number of records recovered.
        """
        if older_than_seconds is None:
            older_than_seconds = settings.stale_syncing_seconds or settings.sync_interval_seconds

        stale = self.find_stale_syncing(db, older_than_seconds)
        for state in stale:
            state.sync_failed("Sync attempt abandoned")
        if stale:
            db.commit()
            logger.warning(f"Recovered {len(stale)} container states stuck in SYNCING")
        return len(stale)

    def reset_failed_states(self, db: Session) -> List[ContainerState]:
        """Give every failed or budget-exhausted record a fresh retry budget."""
        failed = self.find_failed_syncs(db)
        for state in failed:
            state.reset_sync()
        db.commit()
        if failed:
            logger.info(f"Reset {len(failed)} failed container states")
        return failed

    def reset_state(self, db: Session, state_id: int) -> ContainerState:
        """Reset one record's retry budget.

        Raises:
            ValueError: If the record is not found.
        """
        state = self.get_state(db, state_id)
        if not state:
            raise ValueError(f"Container state {state_id} not found")

        state.reset_sync()
        db.commit()
        db.refresh(state)
        return state

    def cleanup_old_states(self, db: Session, days_to_keep: Optional[int] = None) -> int:
        """Delete SYNCED records untouched for longer than the retention window.

        Returns:
            Number of records deleted.
        """
        if days_to_keep is None:
            days_to_keep = settings.state_retention_days
        if days_to_keep < 0:
            raise ValueError("days_to_keep must not be negative")

        threshold = datetime.utcnow() - timedelta(days=days_to_keep)
        deleted = (
            db.query(ContainerState)
            .filter(
                ContainerState.sync_status == SyncStatus.SYNCED.value,
                ContainerState.updated_at < threshold,
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info(f"Cleaned up {deleted} synced container states older than {days_to_keep} days")
        return deleted

    def get_statistics(self, db: Session) -> Dict[str, Any]:
        """Aggregate counts by sync and health status."""
        sync_stats = dict(
            db.query(ContainerState.sync_status, func.count(ContainerState.id))
            .group_by(ContainerState.sync_status)
            .all()
        )
        health_stats = dict(
            db.query(ContainerState.health_status, func.count(ContainerState.id))
            .group_by(ContainerState.health_status)
            .all()
        )

        return {
            "sync_status_stats": sync_stats,
            "health_status_stats": health_stats,
            "total_states": db.query(func.count(ContainerState.id)).scalar() or 0,
            "needing_reconciliation": len(self.find_needing_reconciliation(db)),
            "failed_syncs": len(self.find_failed_syncs(db)),
        }

    def apply_observation(
        self,
        db: Session,
        host_node_id: int,
        container_id: str,
        current_status,
        health_status=None,
        container_name: Optional[str] = None,
        image_name: Optional[str] = None
    ) -> List[ContainerState]:
        """Record an observed container on every matching record (caller commits)."""
        states = (
            db.query(ContainerState)
            .filter(
                ContainerState.host_node_id == host_node_id,
                ContainerState.container_id == container_id,
            )
            .all()
        )
        for state in states:
            state.set_current_status(current_status)
            if health_status is not None:
                state.set_health_status(health_status)
            if container_name:
                state.container_name = container_name
            if image_name:
                state.image_name = image_name
        return states

    async def force_sync_asset(self, db: Session, asset_id: int, operator: Optional[str] = None) -> Dict[str, Any]:
        """Reset and immediately reconcile every record of an asset.

        Raises:
            RuntimeError: If no reconciler is configured.
        """
        if self.reconciler is None:
            raise RuntimeError("No reconciler configured for force sync")

        states = self.get_states_by_asset(db, asset_id)
        results = []
        success_count = 0

        for state in states:
            if state.sync_status == SyncStatus.SYNCING.value:
                results.append({
                    "state_id": state.id,
                    "container_id": state.container_id,
                    "success": False,
                    "sync_status": state.sync_status,
                    "error": "Sync already in progress",
                })
                continue

            state.reset_sync()
            db.commit()

            outcome = await self.reconciler.reconcile(db, state)
            if outcome.success:
                success_count += 1
            results.append({
                "state_id": outcome.state_id,
                "container_id": outcome.container_id,
                "success": outcome.success,
                "sync_status": outcome.sync_status,
                "error": outcome.error,
            })

        logger.info(
            f"Force sync of asset {asset_id} by {operator or 'unknown'}: "
            f"{success_count}/{len(states)} containers synced"
        )

        return {
            "asset_id": asset_id,
            "total_containers": len(states),
            "success_count": success_count,
            "failure_count": len(states) - success_count,
            "sync_results": results,
            "operator": operator,
            "sync_time": datetime.utcnow().isoformat(),
        }
