import logging
from typing import Optional
import httpx
from substrates.base import HealthProbe

logger = logging.getLogger(__name__)


class HttpHealthProbe(HealthProbe):
    """deployment 엔드포인트의 health / version 경로를 GET 으로 확인한다."""

    def __init__(self, url_template: str = "http://deployment-{deployment_id}:8080",
                 health_path: str = "/health", version_path: str = "/version",
                 timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url_template = url_template
        self.health_path = health_path
        self.version_path = version_path
        self.timeout = timeout
        self.transport = transport

    @property
    def substrate_type(self) -> str:
        return "http"

    def _client(self, deployment_id: int) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.url_template.format(deployment_id=deployment_id),
            timeout=self.timeout,
            transport=self.transport,
        )

    async def check_health(self, deployment_id: int) -> bool:
        async with self._client(deployment_id) as client:
            resp = await client.get(self.health_path)
        if resp.status_code != 200:
            logger.info(f"Deployment {deployment_id} health endpoint returned {resp.status_code}")
            return False
        return True

    async def check_deployed_version(self, deployment_id: int, expected_version_id: int) -> bool:
        async with self._client(deployment_id) as client:
            resp = await client.get(self.version_path)
        if resp.status_code != 200:
            return False
        version_id = resp.json().get("version_id")
        return str(version_id) == str(expected_version_id)
