"""Runtime driver: the seam between the reconciler and container hosts."""

import abc
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from rangesync.models.container_state import CurrentStatus, DesiredStatus, HealthStatus
from rangesync.models.host_node import HostNode
from rangesync.services.docker_client import DockerAPIError, DockerEngineClient
from rangesync.services.encryption_service import EncryptionService

logger = logging.getLogger(__name__)


class RuntimeAction(str, enum.Enum):
    """Runtime operation needed to move a container towards its desired status."""

    START = "start"
    STOP = "stop"
    PAUSE = "pause"
    UNPAUSE = "unpause"
    RESTART = "restart"
    START_AND_PAUSE = "start_and_pause"
    CREATE = "create"
    CREATE_AND_START = "create_and_start"
    CREATE_AND_PAUSE = "create_and_pause"

    @property
    def creates_container(self) -> bool:
        return self.value.startswith("create")


ACTION_STEPS = {
    RuntimeAction.START: ("start",),
    RuntimeAction.STOP: ("stop",),
    RuntimeAction.PAUSE: ("pause",),
    RuntimeAction.UNPAUSE: ("unpause",),
    RuntimeAction.RESTART: ("restart",),
    RuntimeAction.START_AND_PAUSE: ("start", "pause"),
    RuntimeAction.CREATE: ("create",),
    RuntimeAction.CREATE_AND_START: ("create", "start"),
    RuntimeAction.CREATE_AND_PAUSE: ("create", "start", "pause"),
}


class RuntimeDriverError(Exception):
    """Raised when a runtime operation or probe cannot be completed."""


@dataclass(frozen=True)
class ContainerRef:
    """Identifies the container an action targets."""

    container_id: Optional[str]
    container_name: Optional[str] = None
    image_name: Optional[str] = None


@dataclass(frozen=True)
class ActionResult:
    """Status read back from the runtime after an action."""

    container_id: str
    status: CurrentStatus
    health: HealthStatus = HealthStatus.UNKNOWN


@dataclass(frozen=True)
class ContainerObservation:
    """One container as seen by a probe of a host."""

    container_id: str
    name: Optional[str] = None
    image: Optional[str] = None
    status: Optional[str] = None
    ports: Optional[str] = None
    labels: Optional[str] = None
    health: HealthStatus = HealthStatus.UNKNOWN
    host_node_id: Optional[int] = None

    @property
    def current_status(self) -> CurrentStatus:
        return map_container_status(self.status)


def map_container_status(runtime_status: Optional[str]) -> CurrentStatus:
    """Map a Docker state or status string onto CurrentStatus."""
    if not runtime_status:
        return CurrentStatus.UNKNOWN

    lower = runtime_status.lower()
    # "Up 3 minutes (Paused)" must not read as running
    if "paused" in lower:
        return CurrentStatus.PAUSED
    if "running" in lower or lower.startswith("up"):
        return CurrentStatus.RUNNING
    if any(word in lower for word in ("exited", "stopped", "created", "dead")):
        return CurrentStatus.STOPPED
    return CurrentStatus.UNKNOWN


def map_health_status(runtime_health: Optional[str]) -> HealthStatus:
    """Map a Docker health string (or a status text containing one) onto HealthStatus."""
    if not runtime_health:
        return HealthStatus.UNKNOWN
    lower = runtime_health.lower()
    if "unhealthy" in lower:
        return HealthStatus.UNHEALTHY
    if "healthy" in lower:
        return HealthStatus.HEALTHY
    return HealthStatus.UNKNOWN


def resolve_action(desired, current, has_container: bool) -> RuntimeAction:
    """Pick the runtime action implied by the desired status.

    Args:
        desired: Desired status of the record.
        current: Last observed status of the record.
        has_container: Whether a runtime container ID is known.

    Returns:
        The action to apply.
    """
    desired = DesiredStatus(desired)
    current = CurrentStatus(current)

    if not has_container:
        if desired == DesiredStatus.STOPPED:
            return RuntimeAction.CREATE
        if desired == DesiredStatus.PAUSED:
            return RuntimeAction.CREATE_AND_PAUSE
        return RuntimeAction.CREATE_AND_START

    if desired == DesiredStatus.RESTARTED:
        return RuntimeAction.RESTART
    if desired == DesiredStatus.STOPPED:
        return RuntimeAction.STOP
    if desired == DesiredStatus.PAUSED:
        if current == CurrentStatus.STOPPED:
            return RuntimeAction.START_AND_PAUSE
        return RuntimeAction.PAUSE
    if current == CurrentStatus.PAUSED:
        return RuntimeAction.UNPAUSE
    return RuntimeAction.START


class RuntimeDriver(abc.ABC):
    """Contract the reconciler and discovery service rely on."""

    @abc.abstractmethod
    async def apply_desired_state(
        self,
        host: HostNode,
        container: ContainerRef,
        action: RuntimeAction
    ) -> ActionResult:
        """Apply an action to a container and read back its status.

        Raises:
            RuntimeDriverError: If the action fails or the host is unreachable.
        """

    @abc.abstractmethod
    async def probe_containers(self, host: HostNode) -> List[ContainerObservation]:
        """List every container present on a host.

        Raises:
            RuntimeDriverError: If the probe cannot be completed.
        """

    async def ping(self, host: HostNode) -> bool:
        """Check whether the host's runtime answers."""
        try:
            await self.probe_containers(host)
            return True
        except RuntimeDriverError:
            return False


class DockerRuntimeDriver(RuntimeDriver):
    """Runtime driver backed by the Docker Engine API of each host node."""

    def __init__(
        self,
        encryption_service: Optional[EncryptionService] = None,
        client_factory: Callable[..., DockerEngineClient] = DockerEngineClient
    ):
        """Initialize Docker runtime driver.

        Args:
            encryption_service: Service used to decrypt host API tokens.
            client_factory: Callable building a DockerEngineClient (base_url, api_token).
        """
        self.encryption_service = encryption_service
        self.client_factory = client_factory

    def _client_for(self, host: HostNode) -> DockerEngineClient:
        api_token = None
        if host.api_token_encrypted:
            if self.encryption_service is None:
                self.encryption_service = EncryptionService()
            api_token = self.encryption_service.decrypt(host.api_token_encrypted)
        return self.client_factory(base_url=host.docker_api_url, api_token=api_token)

    async def apply_desired_state(
        self,
        host: HostNode,
        container: ContainerRef,
        action: RuntimeAction
    ) -> ActionResult:
        action = RuntimeAction(action)
        container_id = container.container_id

        if action.creates_container and not container.image_name:
            raise RuntimeDriverError("Cannot create container: no image name recorded")
        if not action.creates_container and not container_id:
            raise RuntimeDriverError(f"Cannot {action.value}: container has no runtime ID")

        try:
            async with self._client_for(host) as client:
                for step in ACTION_STEPS[action]:
                    if step == "create":
                        container_id = await client.create_container(
                            image=container.image_name,
                            name=container.container_name
                        )
                    elif step == "start":
                        await client.start_container(container_id)
                    elif step == "stop":
                        await client.stop_container(container_id)
                    elif step == "pause":
                        await client.pause_container(container_id)
                    elif step == "unpause":
                        await client.unpause_container(container_id)
                    elif step == "restart":
                        await client.restart_container(container_id)

                info = await client.inspect_container(container_id)
        except (DockerAPIError, httpx.HTTPError) as e:
            raise RuntimeDriverError(
                f"{action.value} failed on host {host.name}: {type(e).__name__}: {e}"
            ) from e

        state = info.get("State", {}) if isinstance(info, dict) else {}
        return ActionResult(
            container_id=container_id,
            status=map_container_status(state.get("Status")),
            health=map_health_status((state.get("Health") or {}).get("Status")),
        )

    async def probe_containers(self, host: HostNode) -> List[ContainerObservation]:
        try:
            async with self._client_for(host) as client:
                summaries = await client.list_containers(all_containers=True)
        except (DockerAPIError, httpx.HTTPError) as e:
            raise RuntimeDriverError(
                f"Probe of host {host.name} failed: {type(e).__name__}: {e}"
            ) from e

        return [self._to_observation(summary, host) for summary in summaries if summary.get("Id")]

    @staticmethod
    def _to_observation(summary: Dict[str, Any], host: HostNode) -> ContainerObservation:
        names = summary.get("Names") or []
        name = names[0].lstrip("/") if names else None

        ports = summary.get("Ports") or []
        labels = summary.get("Labels") or {}

        return ContainerObservation(
            container_id=summary["Id"],
            name=name,
            image=summary.get("Image"),
            status=summary.get("State") or summary.get("Status"),
            ports=json.dumps(ports, sort_keys=True) if ports else None,
            labels=json.dumps(labels, sort_keys=True) if labels else None,
            health=map_health_status(summary.get("Status")),
            host_node_id=host.id,
        )
