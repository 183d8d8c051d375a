import asyncio
import logging
import re
from typing import Any, Dict, List, Optional
import docker
from docker.errors import DockerException
from substrates.base import WorkloadSubstrate, HealthProbe

logger = logging.getLogger(__name__)

LABEL_DEPLOYMENT = "operato.deployment"
LABEL_VERSION = "operato.version"


def to_mem_limit(memory: Optional[str]) -> Optional[str]:
    # k8s 표기(512Mi, 1Gi) -> docker 표기(512m, 1g)
    if not memory:
        return None
    match = re.fullmatch(r"(\d+)([KMG])i?", memory.strip(), re.IGNORECASE)
    if not match:
        return memory
    return f"{match.group(1)}{match.group(2).lower()}"


def to_nano_cpus(cpu: Optional[str]) -> Optional[int]:
    # "500m" -> 0.5 CPU, "2" -> 2 CPU
    if not cpu:
        return None
    cpu = cpu.strip()
    if cpu.endswith("m"):
        return int(cpu[:-1]) * 1_000_000
    return int(float(cpu) * 1_000_000_000)


class DockerWorkload(WorkloadSubstrate, HealthProbe):
    def __init__(self, client=None, name_prefix: str = "deployment", network: Optional[str] = None):
        self.client = client or docker.from_env()
        self.name_prefix = name_prefix
        self.network = network

    @property
    def substrate_type(self) -> str:
        return "docker"

    def _containers(self, deployment_id: int) -> List[Any]:
        return self.client.containers.list(all=True, filters={"label": f"{LABEL_DEPLOYMENT}={deployment_id}"})

    def _deploy(self, deployment_id: int, target_version_id: int, config: Dict[str, Any]) -> bool:
        image_ref = config.get("artifact_uri")
        if not image_ref:
            logger.error(f"Deployment {deployment_id}: version {target_version_id} has no artifact_uri")
            return False
        resources = config.get("resources") or {}
        replicas = int(config.get("replicas") or 1)
        try:
            # 이미지 pull (최초 실행 시)
            self.client.images.pull(image_ref)
            for container in self._containers(deployment_id):
                container.remove(force=True)
            for index in range(replicas):
                self.client.containers.run(
                    image_ref,
                    name=f"{self.name_prefix}-{deployment_id}-{index}",
                    detach=True,
                    labels={LABEL_DEPLOYMENT: str(deployment_id), LABEL_VERSION: str(target_version_id)},
                    environment=config.get("environment") or {},
                    mem_limit=to_mem_limit(resources.get("memory")),
                    nano_cpus=to_nano_cpus(resources.get("cpu")),
                    network=self.network,
                )
        except DockerException as e:
            logger.error(f"Deployment {deployment_id}: docker deploy of {image_ref} failed: {e}")
            return False
        logger.info(f"Deployment {deployment_id}: {replicas} container(s) of {image_ref} started")
        return True

    async def deploy_version(self, deployment_id: int, target_version_id: int, config: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(self._deploy, deployment_id, target_version_id, config)

    async def check_health(self, deployment_id: int) -> bool:
        containers = await asyncio.to_thread(self._containers, deployment_id)
        if not containers:
            return False
        for container in containers:
            if container.status != "running":
                return False
            # HEALTHCHECK이 정의된 이미지만 Health 항목이 있다
            health = (container.attrs.get("State") or {}).get("Health")
            if health and health.get("Status") != "healthy":
                return False
        return True

    async def check_deployed_version(self, deployment_id: int, expected_version_id: int) -> bool:
        containers = await asyncio.to_thread(self._containers, deployment_id)
        return bool(containers) and all(
            container.labels.get(LABEL_VERSION) == str(expected_version_id) for container in containers
        )

