"""Reconciler: drives one container state record towards its desired status."""

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session

from rangesync.config import settings
from rangesync.models.container_state import ContainerState, CurrentStatus, DesiredStatus, SyncStatus
from rangesync.models.host_node import HostNode
from rangesync.services.runtime_driver import (
    ActionResult,
    ContainerRef,
    RuntimeDriver,
    RuntimeDriverError,
    resolve_action,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    """Result of one reconcile call."""

    state_id: int
    container_id: Optional[str]
    attempted: bool
    success: bool
    sync_status: str
    action: Optional[str] = None
    error: Optional[str] = None
    superseded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Reconciler:
    """Applies the runtime action implied by a record's desired status.

    Runtime failures never escape: they are recorded on the record and
    count against its retry budget.
    """

    def __init__(self, driver: RuntimeDriver, call_timeout: Optional[float] = None):
        """Initialize reconciler.

        Args:
            driver: Runtime driver used to act on containers.
            call_timeout: Seconds before a runtime call is abandoned
                (defaults to settings.runtime_call_timeout_seconds).
        """
        self.driver = driver
        self.call_timeout = call_timeout if call_timeout is not None else settings.runtime_call_timeout_seconds

    async def reconcile(self, db: Session, state: ContainerState) -> ReconcileOutcome:
        """Run one convergence attempt for a record.

        The SYNCING transition is committed before the runtime is called, so
        an interrupted attempt is visible as a stuck SYNCING record.

        Args:
            db: Database session owning the record.
            state: Record to converge.

        Returns:
            ReconcileOutcome describing the attempt. Records that do not need
            reconciliation yield an outcome with attempted=False.
        """
        if not state.needs_reconciliation():
            return ReconcileOutcome(
                state_id=state.id,
                container_id=state.container_id,
                attempted=False,
                success=state.sync_status == SyncStatus.SYNCED.value,
                sync_status=state.sync_status,
            )

        action = resolve_action(state.desired_status, state.current_status, bool(state.container_id))
        state.start_sync()
        db.commit()

        logger.info(
            f"Reconciling container state {state.id} ({state.container_id or state.container_name}): "
            f"{state.current_status} -> {state.desired_status} via {action.value} "
            f"(attempt {state.sync_attempts}/{state.max_sync_attempts})"
        )

        result: Optional[ActionResult] = None
        error: Optional[str] = None

        host = None
        if state.host_node_id is not None:
            host = db.query(HostNode).filter(HostNode.id == state.host_node_id).first()

        if host is None or not host.is_active:
            error = f"Host node {state.host_node_id} is not available"
        else:
            container = ContainerRef(
                container_id=state.container_id,
                container_name=state.container_name,
                image_name=state.image_name,
            )
            try:
                result = await asyncio.wait_for(
                    self.driver.apply_desired_state(host, container, action),
                    timeout=self.call_timeout
                )
            except asyncio.TimeoutError:
                error = f"Runtime call timed out after {self.call_timeout}s"
            except RuntimeDriverError as e:
                error = str(e)
            except Exception as e:
                logger.exception(f"Unexpected runtime error for container state {state.id}")
                error = f"{type(e).__name__}: {e}"

        # Pick up changes committed elsewhere while the call was in flight
        db.refresh(state)

        if state.sync_status != SyncStatus.SYNCING.value:
            return self._conclude_superseded(db, state, action.value, result, error)

        if error is None:
            if result.container_id:
                state.container_id = result.container_id
            if state.desired_status == DesiredStatus.RESTARTED.value and result.status == CurrentStatus.RUNNING:
                state.desired_status = DesiredStatus.RUNNING
            state.current_status = result.status
            state.set_health_status(result.health)

            if state.goal_matched:
                state.sync_success()
            else:
                error = (
                    f"Container is {state.current_status} after {action.value}, "
                    f"expected {state.desired_status}"
                )

        if error is not None:
            state.sync_failed(error)
            logger.warning(
                f"Reconcile of container state {state.id} failed "
                f"({state.sync_attempts}/{state.max_sync_attempts}): {error}"
            )
        else:
            logger.info(f"Container state {state.id} synced: {state.current_status}")

        db.commit()

        return ReconcileOutcome(
            state_id=state.id,
            container_id=state.container_id,
            attempted=True,
            success=error is None,
            sync_status=state.sync_status,
            action=action.value,
            error=error,
        )

    def _conclude_superseded(
        self,
        db: Session,
        state: ContainerState,
        action: str,
        result: Optional[ActionResult],
        error: Optional[str]
    ) -> ReconcileOutcome:
        """Record what was observed without overriding a newer goal.

        The attempt counts as a success only if the record ended up SYNCED.
        """
        logger.info(f"Container state {state.id} changed during reconcile; keeping {state.sync_status}")

        if result is not None:
            if result.container_id and not state.container_id:
                state.container_id = result.container_id
            state.set_current_status(result.status)
            state.set_health_status(result.health)
            db.commit()

        return ReconcileOutcome(
            state_id=state.id,
            container_id=state.container_id,
            attempted=True,
            success=state.sync_status == SyncStatus.SYNCED.value,
            sync_status=state.sync_status,
            action=action,
            error=error,
            superseded=True,
        )
