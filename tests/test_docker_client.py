"""Tests for the Docker Engine client."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
import httpx
from tenacity import wait_none

from rangesync.services.docker_client import DockerAPIError, DockerEngineClient


def make_response(status_code=200, json_data=None, text=""):
    """Create a mock httpx response."""
    response = MagicMock()
    response.status_code = status_code
    response.headers = {"content-type": "application/json"} if json_data is not None else {}
    response.content = b"payload" if (json_data is not None or text) else b""
    response.text = text
    response.json.return_value = json_data
    if status_code >= 400:
        response.raise_for_status.side_effect = httpx.HTTPStatusError(
            f"HTTP {status_code}", request=MagicMock(), response=response
        )
    return response


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx client."""
    return AsyncMock(spec=httpx.AsyncClient)


@pytest.fixture
async def docker_client(mock_httpx_client):
    """Create a Docker client whose transport is mocked."""
    client = DockerEngineClient(base_url="http://10.0.0.5:2375/", api_token="secret")
    async with client:
        await client._client.aclose()
        client._client = mock_httpx_client
        yield client


class TestDockerEngineClient:
    """Test Docker Engine client functionality."""

    def test_initialization(self):
        client = DockerEngineClient(base_url="http://host:2375/", timeout=3.0)
        assert client.base_url == "http://host:2375"
        assert client.timeout == 3.0
        assert client.api_token is None

    @pytest.mark.asyncio
    async def test_context_manager(self):
        """Test client opens and closes its HTTP client."""
        client = DockerEngineClient(base_url="http://host:2375", api_token="tok")

        async with client:
            assert client._client is not None
            assert client._client.headers["Authorization"] == "Bearer tok"

        assert client._client is None

    @pytest.mark.asyncio
    async def test_requires_context_manager(self):
        client = DockerEngineClient(base_url="http://host:2375")
        with pytest.raises(RuntimeError):
            await client.list_containers()

    @pytest.mark.asyncio
    async def test_list_containers(self, docker_client, mock_httpx_client):
        mock_httpx_client.request.return_value = make_response(json_data=[{"Id": "abc"}])

        result = await docker_client.list_containers()

        assert result == [{"Id": "abc"}]
        kwargs = mock_httpx_client.request.call_args.kwargs
        assert kwargs["url"] == "/containers/json"
        assert kwargs["params"] == {"all": "true"}

    @pytest.mark.asyncio
    async def test_not_modified_is_success(self, docker_client, mock_httpx_client):
        """Starting an already running container answers 304."""
        mock_httpx_client.request.return_value = make_response(status_code=304)

        await docker_client.start_container("abc")

        assert mock_httpx_client.request.call_args.kwargs["url"] == "/containers/abc/start"

    @pytest.mark.asyncio
    async def test_stop_passes_grace_period(self, docker_client, mock_httpx_client):
        mock_httpx_client.request.return_value = make_response(status_code=204)

        await docker_client.stop_container("abc", timeout=5)

        assert mock_httpx_client.request.call_args.kwargs["params"] == {"t": 5}

    @pytest.mark.asyncio
    async def test_error_status_raises(self, docker_client, mock_httpx_client):
        mock_httpx_client.request.return_value = make_response(
            status_code=404, json_data={"message": "No such container: abc"}
        )

        with pytest.raises(DockerAPIError) as exc_info:
            await docker_client.inspect_container("abc")

        assert exc_info.value.status_code == 404
        assert "No such container" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_create_container(self, docker_client, mock_httpx_client):
        mock_httpx_client.request.return_value = make_response(status_code=201, json_data={"Id": "new123456789abc"})

        container_id = await docker_client.create_container("nginx:1.25", name="web", labels={"team": "blue"})

        assert container_id == "new123456789abc"
        kwargs = mock_httpx_client.request.call_args.kwargs
        assert kwargs["json"] == {"Image": "nginx:1.25", "Labels": {"team": "blue"}}
        assert kwargs["params"] == {"name": "web"}

    @pytest.mark.asyncio
    async def test_create_container_without_id(self, docker_client, mock_httpx_client):
        mock_httpx_client.request.return_value = make_response(status_code=201, json_data={})

        with pytest.raises(DockerAPIError):
            await docker_client.create_container("nginx:1.25")

    @pytest.mark.asyncio
    async def test_ping(self, docker_client, mock_httpx_client):
        mock_httpx_client.request.return_value = make_response(text="OK")
        assert await docker_client.ping() is True

    @pytest.mark.asyncio
    async def test_ping_failure(self, docker_client, mock_httpx_client):
        mock_httpx_client.request.side_effect = httpx.RequestError("Connection failed")
        assert await docker_client.ping() is False

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(self, docker_client, mock_httpx_client):
        mock_httpx_client.request.side_effect = [
            httpx.ConnectError("refused"),
            make_response(json_data=[]),
        ]

        with patch.object(DockerEngineClient._make_request.retry, "wait", wait_none()):
            result = await docker_client.list_containers()

        assert result == []
        assert mock_httpx_client.request.call_count == 2
