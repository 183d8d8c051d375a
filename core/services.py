import logging
from typing import Optional

from core.config import Settings
from deployment_manager import DeploymentManager
from rollback_orchestrator import RollbackOrchestrator
from rollout_orchestrator import RolloutOrchestrator
from slo_monitor import SLOMonitor
from substrates.simulated import SimulatedSubstrate
from version_registry import VersionRegistry

logger = logging.getLogger(__name__)


class Services:
    """프로세스 하나에 한 벌씩 만드는 서비스 묶음 (FastAPI app.state에 올린다)"""

    def __init__(self, deployment_manager: DeploymentManager, version_registry: VersionRegistry,
                 rollback_orchestrator: RollbackOrchestrator, monitor: SLOMonitor,
                 rollout_orchestrator: RolloutOrchestrator):
        self.deployment_manager = deployment_manager
        self.version_registry = version_registry
        self.rollback_orchestrator = rollback_orchestrator
        self.monitor = monitor
        self.rollout_orchestrator = rollout_orchestrator

    async def shutdown(self) -> None:
        # monitor를 먼저 멈춰야 새 자동 롤백이 생기지 않는다
        await self.monitor.shutdown()
        await self.rollout_orchestrator.shutdown()
        await self.rollback_orchestrator.shutdown()
        # 취소 직전에 끝난 롤백이 다시 켠 watch 정리
        await self.monitor.shutdown()
        logger.info("Deployment services stopped")


def build_substrates(settings: Settings):
    """(workload, traffic_router, health_probe)"""
    simulated: Optional[SimulatedSubstrate] = None
    if settings.substrate == "docker":
        from substrates.docker import DockerWorkload
        workload = DockerWorkload()
    elif settings.substrate == "simulated":
        simulated = SimulatedSubstrate()
        workload = simulated
    else:
        raise ValueError(f"Unknown substrate: {settings.substrate}")

    # 트래픽 라우팅은 아직 simulated만 있음
    traffic_router = simulated or SimulatedSubstrate()

    if settings.health_probe == "http":
        from substrates.http_probe import HttpHealthProbe
        health_probe = HttpHealthProbe(url_template=settings.health_url_template)
    elif settings.health_probe == "substrate":
        health_probe = workload
    else:
        raise ValueError(f"Unknown health probe: {settings.health_probe}")
    return workload, traffic_router, health_probe


def build_services(settings: Settings, session_factory, workload=None, traffic_router=None,
                   health_probe=None) -> Services:
    if workload is None or traffic_router is None or health_probe is None:
        default_workload, default_router, default_probe = build_substrates(settings)
        workload = workload or default_workload
        traffic_router = traffic_router or default_router
        health_probe = health_probe or default_probe

    deployment_manager = DeploymentManager(session_factory)
    version_registry = VersionRegistry(session_factory)
    rollback_orchestrator = RollbackOrchestrator(
        deployment_manager, version_registry, workload, traffic_router, health_probe, settings.rollback
    )
    monitor = SLOMonitor(deployment_manager, rollback_orchestrator, settings.monitoring)
    rollback_orchestrator.monitor = monitor
    rollout_orchestrator = RolloutOrchestrator(
        deployment_manager, version_registry, workload, traffic_router, health_probe,
        rollback_orchestrator, monitor, settings.rollout,
    )
    logger.info(f"Deployment services ready (substrate={workload.substrate_type}, "
                f"health_probe={health_probe.substrate_type})")
    return Services(deployment_manager, version_registry, rollback_orchestrator, monitor,
                    rollout_orchestrator)
