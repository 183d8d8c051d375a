import asyncio
import logging
import random
from typing import Any, Dict, List, Optional, Tuple
from substrates.base import WorkloadSubstrate, TrafficRouter, HealthProbe

logger = logging.getLogger(__name__)


class SimulatedSubstrate(WorkloadSubstrate, TrafficRouter, HealthProbe):
    """프로세스 내 시뮬레이션. 실제 load balancer / scheduler 없이 개발·테스트용으로 쓴다."""

    def __init__(self, deploy_delay: float = 0.0, traffic_delay: float = 0.0, probe_delay: float = 0.0,
                 health_success_rate: float = 1.0, rng: Optional[random.Random] = None):
        self.deploy_delay = deploy_delay
        self.traffic_delay = traffic_delay
        self.probe_delay = probe_delay
        self.health_success_rate = health_success_rate
        self.rng = rng or random.Random()
        self.deployed_versions: Dict[int, int] = {}
        self.traffic: Dict[int, int] = {}
        self.calls: List[Tuple[str, Any]] = []

    @property
    def substrate_type(self) -> str:
        return "simulated"

    async def deploy_version(self, deployment_id: int, target_version_id: int, config: Dict[str, Any]) -> bool:
        self.calls.append(("deploy_version", (deployment_id, target_version_id)))
        await asyncio.sleep(self.deploy_delay)
        self.deployed_versions[deployment_id] = target_version_id
        logger.info(f"[simulated] deployment {deployment_id} now runs version {target_version_id} "
                    f"({config.get('replicas')} replicas)")
        return True

    async def shift_traffic(self, deployment_id: int, percentage: int) -> bool:
        self.calls.append(("shift_traffic", (deployment_id, percentage)))
        await asyncio.sleep(self.traffic_delay)
        self.traffic[deployment_id] = percentage
        logger.info(f"[simulated] deployment {deployment_id} traffic -> {percentage}%")
        return True

    async def check_health(self, deployment_id: int) -> bool:
        self.calls.append(("check_health", deployment_id))
        await asyncio.sleep(self.probe_delay)
        return self.rng.random() < self.health_success_rate

    async def check_deployed_version(self, deployment_id: int, expected_version_id: int) -> bool:
        self.calls.append(("check_deployed_version", (deployment_id, expected_version_id)))
        await asyncio.sleep(self.probe_delay)
        return self.deployed_versions.get(deployment_id) == expected_version_id
