"""Docker Engine API client for managing containers on a host node."""

import logging
from typing import List, Dict, Optional, Any, Union
import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from rangesync.config import settings

logger = logging.getLogger(__name__)


class DockerAPIError(Exception):
    """Raised when the Docker Engine API answers with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DockerEngineClient:
    """Client for interacting with the Docker Engine REST API of one host."""

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        """Initialize Docker Engine client.

        Args:
            base_url: Docker API URL of the host, e.g. http://10.0.0.5:2375.
            api_token: Optional bearer token for authenticating API proxies.
            timeout: Request timeout in seconds (defaults to settings.docker_api_timeout_seconds).
        """
        self.base_url = base_url.rstrip('/')
        self.api_token = api_token
        self.timeout = timeout if timeout is not None else settings.docker_api_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=headers
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client.

        Raises:
            RuntimeError: If client is not initialized (use async context manager).
        """
        if self._client is None:
            raise RuntimeError("DockerEngineClient must be used as async context manager")
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True
    )
    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Union[Dict[str, Any], List[Any], str]:
        """Make HTTP request to the Docker API with retry logic.

        Args:
            method: HTTP method (GET, POST, DELETE).
            endpoint: API endpoint path.
            json_data: JSON request body (optional).
            params: Query parameters (optional).

        Returns:
            Parsed JSON body, raw text for non-JSON bodies, or an empty dict
            for empty/304 responses.

        Raises:
            DockerAPIError: If the API answers with an error status.
            httpx.TimeoutException, httpx.NetworkError: If the host stays unreachable after retries.
        """
        client = self._get_client()

        try:
            response = await client.request(
                method=method,
                url=endpoint,
                json=json_data,
                params=params
            )

            # 304 means the container is already in the requested state
            if response.status_code == 304:
                return {}

            response.raise_for_status()

            if not response.content:
                return {}
            if "application/json" in response.headers.get("content-type", ""):
                return response.json()
            return response.text

        except httpx.HTTPStatusError as e:
            message = self._error_message(e.response)
            logger.error(f"Docker API error {e.response.status_code} for {method} {endpoint}: {message}")
            raise DockerAPIError(message, status_code=e.response.status_code) from e
        except httpx.TimeoutException:
            logger.error(f"Timeout for {method} {self.base_url}{endpoint}")
            raise
        except httpx.NetworkError as e:
            logger.error(f"Network error for {method} {self.base_url}{endpoint}: {e}")
            raise

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict) and data.get("message"):
                return data["message"]
        except ValueError:
            pass
        return response.text or f"HTTP {response.status_code}"

    async def ping(self) -> bool:
        """Check if the Docker daemon answers.

        Returns:
            True if the daemon is reachable, False otherwise.
        """
        try:
            await self._make_request("GET", "/_ping")
            return True
        except Exception as e:
            logger.error(f"Docker ping failed for {self.base_url}: {e}")
            return False

    async def list_containers(self, all_containers: bool = True) -> List[Dict[str, Any]]:
        """List containers on the host.

        Args:
            all_containers: Include stopped containers.

        Returns:
            List of container summaries as returned by /containers/json.
        """
        params = {"all": "true" if all_containers else "false"}
        result = await self._make_request("GET", "/containers/json", params=params)
        return result if isinstance(result, list) else []

    async def inspect_container(self, container_id: str) -> Dict[str, Any]:
        """Get low-level information about a container."""
        return await self._make_request("GET", f"/containers/{container_id}/json")

    async def start_container(self, container_id: str) -> None:
        logger.info(f"Starting container {container_id} on {self.base_url}")
        await self._make_request("POST", f"/containers/{container_id}/start")

    async def stop_container(self, container_id: str, timeout: Optional[int] = None) -> None:
        logger.info(f"Stopping container {container_id} on {self.base_url}")
        grace = timeout if timeout is not None else settings.docker_stop_timeout_seconds
        await self._make_request("POST", f"/containers/{container_id}/stop", params={"t": grace})

    async def restart_container(self, container_id: str, timeout: Optional[int] = None) -> None:
        logger.info(f"Restarting container {container_id} on {self.base_url}")
        grace = timeout if timeout is not None else settings.docker_stop_timeout_seconds
        await self._make_request("POST", f"/containers/{container_id}/restart", params={"t": grace})

    async def pause_container(self, container_id: str) -> None:
        logger.info(f"Pausing container {container_id} on {self.base_url}")
        await self._make_request("POST", f"/containers/{container_id}/pause")

    async def unpause_container(self, container_id: str) -> None:
        logger.info(f"Unpausing container {container_id} on {self.base_url}")
        await self._make_request("POST", f"/containers/{container_id}/unpause")

    async def create_container(
        self,
        image: str,
        name: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None
    ) -> str:
        """Create a container from an image.

        Args:
            image: Image reference (name:tag).
            name: Optional container name.
            labels: Optional container labels.

        Returns:
            The new container ID.

        Raises:
            DockerAPIError: If creation fails or no ID is returned.
        """
        logger.info(f"Creating container {name or '<unnamed>'} from image {image} on {self.base_url}")
        params = {"name": name} if name else None
        body: Dict[str, Any] = {"Image": image}
        if labels:
            body["Labels"] = labels

        result = await self._make_request("POST", "/containers/create", json_data=body, params=params)
        container_id = result.get("Id") if isinstance(result, dict) else None
        if not container_id:
            raise DockerAPIError(f"Container creation returned no ID for image {image}")

        logger.info(f"Container created successfully: {container_id[:12]}")
        return container_id
