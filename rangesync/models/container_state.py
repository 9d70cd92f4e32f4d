"""Container state database model and convergence state machine."""

import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, CheckConstraint, Index
from sqlalchemy.orm import validates

from rangesync.config import settings
from rangesync.database.database import Base


class DesiredStatus(str, enum.Enum):
    """Operator intent for a container."""

    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    PAUSED = "PAUSED"
    RESTARTED = "RESTARTED"


class CurrentStatus(str, enum.Enum):
    """Last observed status of a container."""

    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    PAUSED = "PAUSED"
    UNKNOWN = "UNKNOWN"


class HealthStatus(str, enum.Enum):
    """Container health as reported by the runtime."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class SyncStatus(str, enum.Enum):
    """Convergence state of a container state record."""

    SYNCED = "SYNCED"
    OUT_OF_SYNC = "OUT_OF_SYNC"
    SYNCING = "SYNCING"
    FAILED = "FAILED"


# Allowed sync status transitions. Desired-status changes bypass this table
# and always land on OUT_OF_SYNC.
SYNC_TRANSITIONS = {
    SyncStatus.SYNCED: {SyncStatus.SYNCED, SyncStatus.OUT_OF_SYNC},
    SyncStatus.OUT_OF_SYNC: {SyncStatus.OUT_OF_SYNC, SyncStatus.SYNCING, SyncStatus.SYNCED},
    SyncStatus.SYNCING: {SyncStatus.SYNCED, SyncStatus.OUT_OF_SYNC, SyncStatus.FAILED},
    SyncStatus.FAILED: {SyncStatus.OUT_OF_SYNC, SyncStatus.SYNCED},
}


class InvalidTransitionError(ValueError):
    """Raised when a sync status transition is not allowed."""

    def __init__(self, current: SyncStatus, target: SyncStatus):
        super().__init__(f"Illegal sync status transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def _enum_value(enum_cls, value, field: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Invalid {field} '{value}'. Allowed values: {allowed}")


class ContainerState(Base):
    """Desired vs. observed state of one tracked container."""

    __tablename__ = "container_states"

    id = Column(Integer, primary_key=True, index=True)
    asset_id = Column(Integer, nullable=True, index=True)
    host_node_id = Column(Integer, nullable=True, index=True)
    container_id = Column(String(255), nullable=True, index=True)
    container_name = Column(String(255), nullable=True)
    image_name = Column(String(255), nullable=True)
    desired_status = Column(String(50), nullable=False)
    current_status = Column(String(50), nullable=False, default=CurrentStatus.UNKNOWN.value)
    health_status = Column(String(50), nullable=False, default=HealthStatus.UNKNOWN.value)
    sync_status = Column(String(50), nullable=False, default=SyncStatus.OUT_OF_SYNC.value)
    last_sync_at = Column(DateTime, nullable=True)
    sync_attempts = Column(Integer, nullable=False, default=0)
    max_sync_attempts = Column(Integer, nullable=False, default=3)
    sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
    created_by = Column(String(255), nullable=True)

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "desired_status IN ('RUNNING', 'STOPPED', 'PAUSED', 'RESTARTED')",
            name='ck_desired_status'
        ),
        CheckConstraint(
            "current_status IN ('RUNNING', 'STOPPED', 'PAUSED', 'UNKNOWN')",
            name='ck_current_status'
        ),
        CheckConstraint(
            "health_status IN ('healthy', 'unhealthy', 'unknown')",
            name='ck_health_status'
        ),
        CheckConstraint(
            "sync_status IN ('SYNCED', 'OUT_OF_SYNC', 'SYNCING', 'FAILED')",
            name='ck_sync_status'
        ),
        CheckConstraint("sync_attempts >= 0", name='ck_sync_attempts'),
        Index('ix_container_states_sync_status', 'sync_status'),
    )

    def __init__(self, **kwargs):
        now = datetime.utcnow()
        kwargs.setdefault("current_status", CurrentStatus.UNKNOWN)
        kwargs.setdefault("health_status", HealthStatus.UNKNOWN)
        kwargs.setdefault("sync_status", SyncStatus.OUT_OF_SYNC)
        kwargs.setdefault("sync_attempts", 0)
        kwargs.setdefault("max_sync_attempts", settings.default_max_sync_attempts)
        kwargs.setdefault("created_at", now)
        kwargs.setdefault("updated_at", now)
        super().__init__(**kwargs)

    @validates("desired_status")
    def _validate_desired_status(self, key, value):
        return _enum_value(DesiredStatus, value, key)

    @validates("current_status")
    def _validate_current_status(self, key, value):
        return _enum_value(CurrentStatus, value, key)

    @validates("health_status")
    def _validate_health_status(self, key, value):
        return _enum_value(HealthStatus, value, key)

    @validates("sync_status")
    def _validate_sync_status(self, key, value):
        return _enum_value(SyncStatus, value, key)

    def _touch(self) -> None:
        self.updated_at = datetime.utcnow()

    def _transition(self, target: SyncStatus) -> None:
        current = SyncStatus(self.sync_status)
        if target not in SYNC_TRANSITIONS[current]:
            raise InvalidTransitionError(current, target)
        self.sync_status = target
        self._touch()

    @property
    def goal_matched(self) -> bool:
        """Whether the observed status equals the desired status."""
        return self.desired_status == self.current_status

    def set_desired_status(self, status) -> None:
        """Declare a new convergence goal.

        A goal that differs from the observed status restarts the retry
        budget and forces OUT_OF_SYNC, whatever the record was doing.
        """
        self.desired_status = status
        self._touch()
        if not self.goal_matched:
            self.sync_status = SyncStatus.OUT_OF_SYNC
            self.sync_attempts = 0
        elif self.sync_status != SyncStatus.SYNCING.value:
            self._transition(SyncStatus.SYNCED)
            self.sync_error = None

    def set_current_status(self, status) -> None:
        """Record an observed status and re-derive the sync status.

        Converging by observation restarts the retry budget, so a later
        drift gets the full number of attempts.
        """
        self.current_status = status
        self._touch()
        if self.goal_matched:
            if self.sync_status != SyncStatus.SYNCED.value:
                self.sync_attempts = 0
                self.sync_error = None
            self._transition(SyncStatus.SYNCED)
        elif self.sync_status == SyncStatus.SYNCED.value:
            self._transition(SyncStatus.OUT_OF_SYNC)

    def set_health_status(self, status) -> None:
        self.health_status = status
        self._touch()

    def needs_reconciliation(self) -> bool:
        """Check whether the reconciler should act on this record."""
        return (
            self.desired_status is not None
            and not self.goal_matched
            and self.sync_status != SyncStatus.SYNCING.value
            and (self.sync_attempts or 0) < self.max_sync_attempts
        )

    def has_exceeded_max_attempts(self) -> bool:
        return (
            self.sync_attempts is not None
            and self.max_sync_attempts is not None
            and self.sync_attempts >= self.max_sync_attempts
        )

    def is_healthy(self) -> bool:
        return (
            self.health_status == HealthStatus.HEALTHY.value
            and self.sync_status == SyncStatus.SYNCED.value
        )

    def start_sync(self) -> None:
        """Begin a reconciliation attempt (OUT_OF_SYNC -> SYNCING)."""
        self._transition(SyncStatus.SYNCING)
        self.last_sync_at = datetime.utcnow()
        self.sync_attempts = (self.sync_attempts or 0) + 1

    def sync_success(self) -> None:
        """Conclude an attempt whose outcome matched the desired status."""
        if not self.goal_matched:
            raise ValueError(
                f"Cannot mark synced: desired {self.desired_status} != current {self.current_status}"
            )
        self._transition(SyncStatus.SYNCED)
        self.sync_error = None

    def sync_failed(self, error: str) -> None:
        """Conclude a failed attempt; exhausting the budget moves to FAILED."""
        target = SyncStatus.FAILED if self.has_exceeded_max_attempts() else SyncStatus.OUT_OF_SYNC
        self._transition(target)
        self.sync_error = error

    def reset_sync(self) -> None:
        """Give the record a fresh retry budget.

        A record whose observed status already matches its goal lands on
        SYNCED instead of OUT_OF_SYNC.
        """
        self._transition(SyncStatus.SYNCED if self.goal_matched else SyncStatus.OUT_OF_SYNC)
        self.sync_attempts = 0
        self.sync_error = None
        self._touch()

    def status_description(self) -> str:
        """Human-readable summary of the sync status."""
        if self.sync_status == SyncStatus.SYNCED.value:
            return "In sync"
        if self.sync_status == SyncStatus.OUT_OF_SYNC.value:
            return "Needs reconciliation"
        if self.sync_status == SyncStatus.SYNCING.value:
            return "Syncing"
        if self.sync_status == SyncStatus.FAILED.value:
            return f"Sync failed ({self.sync_attempts}/{self.max_sync_attempts})"
        return "Unknown state"

    def __repr__(self) -> str:
        return (
            f"<ContainerState id={self.id} asset_id={self.asset_id} container_id={self.container_id!r} "
            f"desired={self.desired_status} current={self.current_status} sync={self.sync_status}>"
        )
