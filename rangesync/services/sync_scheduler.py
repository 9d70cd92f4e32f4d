"""Periodic container sync scheduler.

Runs four independent asyncio loops:

- sync pass: reconcile every record that needs it (single-flight, guarded by
  a consecutive-failure circuit breaker);
- statistics pass: log aggregate counts;
- cleanup pass: purge old SYNCED records;
- failure-reset pass: give FAILED records a fresh retry budget.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set
from sqlalchemy.orm import Session

from rangesync.config import settings
from rangesync.database.database import SessionLocal
from rangesync.models.sync_run import SyncRun
from rangesync.services.container_state_service import ContainerStateService
from rangesync.services.reconciler import Reconciler

logger = logging.getLogger(__name__)


class ContainerSyncScheduler:
    """Drives the reconciler on a timer and keeps the sync bookkeeping."""

    def __init__(
        self,
        reconciler: Reconciler,
        state_service: Optional[ContainerStateService] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        record_delay: Optional[float] = None,
        max_consecutive_failures: Optional[int] = None
    ):
        """Initialize sync scheduler.

        Args:
            reconciler: Reconciler applied to each divergent record.
            state_service: Container state service (defaults to one bound to reconciler).
            session_factory: Callable returning a new database session per pass.
            record_delay: Seconds to pause between records in a sync pass.
            max_consecutive_failures: Failed passes before sync passes are skipped.
        """
        self.reconciler = reconciler
        self.state_service = state_service or ContainerStateService(reconciler)
        self.session_factory = session_factory
        self.record_delay = record_delay if record_delay is not None else settings.sync_record_delay_seconds
        self.max_consecutive_failures = (
            max_consecutive_failures if max_consecutive_failures is not None
            else settings.max_consecutive_failures
        )

        self._sync_in_progress = False
        self._last_sync_time: Optional[datetime] = None
        self._last_sync_result: Optional[Dict[str, Any]] = None
        self._last_statistics: Optional[Dict[str, Any]] = None
        self._consecutive_failures = 0
        self._tasks: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_in_progress

    def start(self) -> None:
        """Start the periodic loops on the running event loop."""
        if self.is_running:
            logger.warning("Container sync scheduler already running")
            return

        loops = [
            ("sync", settings.sync_interval_seconds, self.run_sync_pass),
            ("statistics", settings.statistics_interval_seconds, self.run_statistics_pass),
            ("cleanup", settings.cleanup_interval_seconds, self.run_cleanup_pass),
            ("failure-reset", settings.failure_reset_interval_seconds, self.run_failure_reset_pass),
        ]
        self._tasks = [
            asyncio.create_task(self._run_periodic(name, interval, pass_fn), name=f"container-{name}")
            for name, interval, pass_fn in loops
        ]
        logger.info(
            f"Container sync scheduler started (sync every {settings.sync_interval_seconds}s, "
            f"failure reset every {settings.failure_reset_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Cancel the periodic loops and any manual pass still running."""
        tasks = self._tasks + list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        self._background.clear()
        logger.info("Container sync scheduler stopped")

    async def _run_periodic(self, name: str, interval: float, pass_fn) -> None:
        logger.info(f"Container {name} loop started (interval: {interval}s)")
        while True:
            try:
                await asyncio.sleep(interval)
                await pass_fn()
            except asyncio.CancelledError:
                logger.info(f"Container {name} loop stopped")
                raise
            except Exception as e:
                logger.exception(f"Error in container {name} loop: {e}")

    # Sync pass

    async def run_sync_pass(self, trigger: str = "scheduled", host_node_id: Optional[int] = None) -> Dict[str, Any]:
        """Run one sync pass unless another one is in flight.

        Returns:
            Pass summary, or {"status": "already_running"} if a pass was running.
        """
        # Test-and-set with no await in between
        if self._sync_in_progress:
            logger.warning("Container sync already in progress, skipping this run")
            return {"status": "already_running"}
        self._sync_in_progress = True

        try:
            return await self._execute_sync_pass(trigger, host_node_id)
        finally:
            self._sync_in_progress = False

    def trigger_manual_sync(self) -> str:
        """Schedule a sync pass in the background.

        Returns:
            "accepted" if a pass was started, "already_running" otherwise.
        """
        if self._sync_in_progress:
            logger.info("Manual sync requested while a sync is running")
            return "already_running"
        self._sync_in_progress = True

        task = asyncio.create_task(self._manual_sync())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        logger.info("Manual container sync accepted")
        return "accepted"

    async def _manual_sync(self) -> None:
        try:
            await self._execute_sync_pass("manual", None)
        finally:
            self._sync_in_progress = False

    async def _execute_sync_pass(self, trigger: str, host_node_id: Optional[int]) -> Dict[str, Any]:
        db = self.session_factory()
        started_at = datetime.utcnow()
        run: Optional[SyncRun] = None

        try:
            if self._consecutive_failures >= self.max_consecutive_failures:
                logger.warning(
                    f"Container sync skipped: {self._consecutive_failures} consecutive failures "
                    f"(limit {self.max_consecutive_failures}); reset the failure count to resume"
                )
                run = SyncRun(
                    trigger=trigger,
                    status="skipped",
                    started_at=started_at,
                    completed_at=datetime.utcnow(),
                    error_message="Circuit breaker open",
                )
                db.add(run)
                db.commit()
                result = {"status": "skipped", "consecutive_failures": self._consecutive_failures}
                self._last_sync_result = result
                return result

            run = SyncRun(trigger=trigger, status="in_progress", started_at=started_at)
            db.add(run)
            db.commit()
            db.refresh(run)

            result = await self._reconcile_all(db, host_node_id)
            pass_failed = result["synced"] == 0 and result["failed"] > 0

            if pass_failed:
                self._consecutive_failures += 1
            elif result["failed"] == 0:
                self._consecutive_failures = 0

            run.status = "failed" if pass_failed else "success"
            run.completed_at = datetime.utcnow()
            run.total_processed = result["processed"]
            run.total_synced = result["synced"]
            run.total_failed = result["failed"]
            run.changes_summary = json.dumps({
                "recovered_stale": result["recovered_stale"],
                "results": result["results"],
            })
            db.commit()

            result["status"] = run.status
            result["sync_run_id"] = run.id
            logger.info(
                f"Container sync {run.id} completed: {result['processed']} processed, "
                f"{result['synced']} synced, {result['failed']} failed"
            )

        except Exception as e:
            db.rollback()
            self._consecutive_failures += 1
            logger.exception(
                f"Container sync failed ({self._consecutive_failures}/{self.max_consecutive_failures}): {e}"
            )
            result = {"status": "failed", "error": str(e), "processed": 0, "synced": 0, "failed": 0}
            self._mark_run_failed(db, run, str(e))
        finally:
            db.close()

        self._last_sync_time = datetime.utcnow()
        self._last_sync_result = result
        return result

    async def _reconcile_all(self, db: Session, host_node_id: Optional[int]) -> Dict[str, Any]:
        recovered = self.state_service.recover_stale_syncing(db)
        states = self.state_service.find_needing_reconciliation(db, host_node_id)

        processed = synced = failed = 0
        results = []
        for index, state in enumerate(states):
            if index and self.record_delay:
                await asyncio.sleep(self.record_delay)

            outcome = await self.reconciler.reconcile(db, state)
            if not outcome.attempted:
                continue

            processed += 1
            if outcome.success:
                synced += 1
            else:
                failed += 1
            results.append(outcome.to_dict())

        return {
            "processed": processed,
            "synced": synced,
            "failed": failed,
            "recovered_stale": recovered,
            "results": results,
        }

    @staticmethod
    def _mark_run_failed(db: Session, run: Optional[SyncRun], error: str) -> None:
        if run is None or run.id is None:
            return
        try:
            run.status = "failed"
            run.completed_at = datetime.utcnow()
            run.error_message = error
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Could not record failed sync run {run.id}: {e}")

    # Maintenance passes

    async def run_statistics_pass(self) -> Dict[str, Any]:
        """Log aggregate container state counts."""
        db = self.session_factory()
        try:
            stats = self.state_service.get_statistics(db)
        finally:
            db.close()

        self._last_statistics = stats
        logger.info(
            f"Container state statistics: total={stats['total_states']}, "
            f"needing_reconciliation={stats['needing_reconciliation']}, "
            f"failed={stats['failed_syncs']}, by_sync_status={stats['sync_status_stats']}"
        )
        return stats

    async def run_cleanup_pass(self) -> int:
        db = self.session_factory()
        try:
            return self.state_service.cleanup_old_states(db, settings.state_retention_days)
        finally:
            db.close()

    async def run_failure_reset_pass(self) -> int:
        db = self.session_factory()
        try:
            reset = self.state_service.reset_failed_states(db)
            return len(reset)
        finally:
            db.close()

    # Status

    def reset_failure_count(self) -> int:
        """Close the circuit breaker.

        Returns:
            The failure count before the reset.
        """
        previous = self._consecutive_failures
        self._consecutive_failures = 0
        logger.info(f"Container sync failure count reset (was {previous})")
        return previous

    def get_task_status(self) -> Dict[str, Any]:
        return {
            "sync_in_progress": self._sync_in_progress,
            "last_sync_time": self._last_sync_time.isoformat() if self._last_sync_time else None,
            "last_sync_result": self._last_sync_result,
            "consecutive_failures": self._consecutive_failures,
            "max_consecutive_failures": self.max_consecutive_failures,
            "is_healthy": self._consecutive_failures < self.max_consecutive_failures,
            "scheduler_running": self.is_running,
        }

    def get_sync_history(self, db: Session, limit: int = 20) -> List[SyncRun]:
        return db.query(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit).all()


_scheduler: Optional[ContainerSyncScheduler] = None


def get_scheduler() -> ContainerSyncScheduler:
    """Get the process-wide scheduler, building it on first use."""
    global _scheduler
    if _scheduler is None:
        from rangesync.services.encryption_service import EncryptionService
        from rangesync.services.runtime_driver import DockerRuntimeDriver

        driver = DockerRuntimeDriver(encryption_service=EncryptionService())
        _scheduler = ContainerSyncScheduler(Reconciler(driver))
    return _scheduler
