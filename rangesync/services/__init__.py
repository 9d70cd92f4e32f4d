"""Services package."""

from rangesync.services.encryption_service import EncryptionService
from rangesync.services.host_node_service import HostNodeService
from rangesync.services.container_state_service import ContainerStateService
from rangesync.services.reconciler import Reconciler, ReconcileOutcome
from rangesync.services.discovery_service import DiscoveryService, DiscoveryDiff, ProbeResult
from rangesync.services.sync_scheduler import ContainerSyncScheduler, get_scheduler

__all__ = [
    "EncryptionService",
    "HostNodeService",
    "ContainerStateService",
    "Reconciler",
    "ReconcileOutcome",
    "DiscoveryService",
    "DiscoveryDiff",
    "ProbeResult",
    "ContainerSyncScheduler",
    "get_scheduler",
]
