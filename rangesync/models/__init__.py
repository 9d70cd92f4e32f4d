"""Database models package."""

from rangesync.models.container_state import (
    ContainerState,
    CurrentStatus,
    DesiredStatus,
    HealthStatus,
    InvalidTransitionError,
    SyncStatus,
)
from rangesync.models.discovery_record import ContainerDiscoveryRecord
from rangesync.models.host_node import HostNode
from rangesync.models.sync_run import SyncRun

__all__ = [
    "ContainerState",
    "CurrentStatus",
    "DesiredStatus",
    "HealthStatus",
    "InvalidTransitionError",
    "SyncStatus",
    "ContainerDiscoveryRecord",
    "HostNode",
    "SyncRun",
]
