"""
Rollout orchestrator.

새 deployment를 만들고 strategy(canary, blue_green, rolling)에 따라 detached
task에서 배포한다. 성공하면 ACTIVE로 바꾸고 monitor를 시작한다. 실패하면
FAILED + critical slo_breach alert를 남기고, 설정에 따라 직전 ACTIVE
deployment의 버전으로 자동 롤백한다.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Set, Union

from core.config import RolloutConfig
from deployment_manager import DeploymentManager
from models import AlertSeverity, AlertType, Deployment, DeploymentStatus, DeploymentStrategy
from retry_policy import PollingPolicy
from schemas.deployment import DeploymentCreate, DeploymentHealth
from substrates.base import HealthProbe, TrafficRouter, WorkloadSubstrate
from utils.clock import utcnow
from utils.exceptions import InfrastructureError, NotFoundError, ValidationError
from version_registry import VersionRegistry

logger = logging.getLogger(__name__)

HEALTH_METRICS_WINDOW = timedelta(minutes=5)


class RolloutOrchestrator:
    def __init__(self, deployment_manager: DeploymentManager, version_registry: VersionRegistry,
                 workload: WorkloadSubstrate, traffic_router: TrafficRouter, health_probe: HealthProbe,
                 rollback_orchestrator, monitor, config: Optional[RolloutConfig] = None):
        self.deployment_manager = deployment_manager
        self.version_registry = version_registry
        self.workload = workload
        self.traffic_router = traffic_router
        self.health_probe = health_probe
        self.rollback_orchestrator = rollback_orchestrator
        self.monitor = monitor
        self.config = config or RolloutConfig()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def health_gate(self) -> PollingPolicy:
        poll_ms = self.config.health_check_poll_ms
        attempts = max(1, self.config.health_check_timeout_ms // poll_ms) if poll_ms else 1
        return PollingPolicy(attempts=attempts, interval=poll_ms / 1000)

    async def orchestrate_deployment(self, request: Union[DeploymentCreate, Dict[str, Any]], deployed_by: str) -> Deployment:
        if not isinstance(request, DeploymentCreate):
            try:
                request = DeploymentCreate.model_validate(request)
            except ValueError as e:
                raise ValidationError("Invalid deployment request", dev_message=str(e))
        if not await self.version_registry.version_exists(request.version_id):
            raise NotFoundError(f"Model version {request.version_id} not found")

        deployment = await self.deployment_manager.create_deployment(request, deployed_by)
        task = asyncio.create_task(self._run_rollout(deployment.id), name=f"rollout-{deployment.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return deployment

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.join()

    async def _run_rollout(self, deployment_id: int) -> None:
        try:
            await self.execute_deployment_strategy(deployment_id)
        except asyncio.CancelledError:
            logger.warning(f"Rollout of deployment {deployment_id} interrupted by shutdown")
            await self.deployment_manager.update_deployment_status(deployment_id, DeploymentStatus.FAILED)
            raise
        except Exception as e:
            logger.exception(f"Rollout of deployment {deployment_id} failed")
            try:
                await self.handle_deployment_failure(deployment_id, e)
            except Exception:
                logger.exception(f"Could not record failure of deployment {deployment_id}")

    async def execute_deployment_strategy(self, deployment_id: int) -> None:
        deployment = await self.deployment_manager.update_deployment_status(
            deployment_id, DeploymentStatus.DEPLOYING, expected=[DeploymentStatus.PENDING]
        )
        if deployment is None:
            raise NotFoundError(f"Deployment {deployment_id} not found")

        if deployment.strategy == DeploymentStrategy.CANARY.value:
            await self._canary(deployment)
        elif deployment.strategy == DeploymentStrategy.BLUE_GREEN.value:
            await self._blue_green(deployment)
        elif deployment.strategy == DeploymentStrategy.ROLLING.value:
            await self._rolling(deployment)
        else:
            raise ValidationError(f"Unsupported deployment strategy: {deployment.strategy}")

        await self.deployment_manager.update_deployment_status(
            deployment_id, DeploymentStatus.ACTIVE, expected=[DeploymentStatus.DEPLOYING]
        )
        logger.info(f"Deployment {deployment_id} is active")
        await self.monitor.start_monitoring(deployment_id)

    async def _canary(self, deployment: Deployment) -> None:
        logger.info(f"Starting canary deployment {deployment.id}")
        await self._deploy(deployment, deployment.configuration)
        await self.wait_until_healthy(deployment.id)

        current = 0
        while current < 100:
            current = min(current + self.config.canary_traffic_increment, 100)
            await self._route_traffic(deployment.id, current)
            logger.info(f"Canary deployment {deployment.id}: routing {current}% traffic")
            if current < 100:
                await asyncio.sleep(self.config.canary_promotion_delay_ms / 1000)
                critical = await self._open_critical_alerts(deployment.id)
                if critical:
                    raise InfrastructureError(f"Canary deployment halted due to {critical} critical alerts")

    async def _blue_green(self, deployment: Deployment) -> None:
        logger.info(f"Starting blue-green deployment {deployment.id}")
        await self._deploy(deployment, deployment.configuration)
        await self.wait_until_healthy(deployment.id)
        await asyncio.sleep(self.config.blue_green_switch_delay_ms / 1000)
        await self._route_traffic(deployment.id, 100)

    async def _rolling(self, deployment: Deployment) -> None:
        logger.info(f"Starting rolling deployment {deployment.id}")
        total = deployment.configuration["replicas"]
        batch_size = min(self.config.rolling_update_batch_size, total)
        deployed = 0
        while deployed < total:
            deployed += min(batch_size, total - deployed)
            await self._deploy(deployment, dict(deployment.configuration, replicas=deployed))
            await self.wait_until_healthy(deployment.id)
            logger.info(f"Rolling deployment {deployment.id}: {deployed}/{total} replicas deployed")
            if deployed < total:
                await asyncio.sleep(self.config.rolling_batch_delay_ms / 1000)

    async def _deploy(self, deployment: Deployment, config: Dict[str, Any]) -> None:
        if not await self.workload.deploy_version(deployment.id, deployment.version_id, config):
            raise InfrastructureError(
                f"Workload substrate failed to deploy version {deployment.version_id} for deployment {deployment.id}"
            )

    async def _route_traffic(self, deployment_id: int, percentage: int) -> None:
        if not await self.traffic_router.shift_traffic(deployment_id, percentage):
            raise InfrastructureError(f"Traffic substrate failed to shift deployment {deployment_id} to {percentage}%")
        current = await self.deployment_manager.get_current_traffic_split(deployment_id)
        if current is not None:
            await self.deployment_manager.complete_traffic_split(current.id)
        await self.deployment_manager.create_traffic_split(deployment_id, percentage)

    async def wait_until_healthy(self, deployment_id: int) -> None:
        healthy = await self.health_gate.until_true(
            self.health_probe.check_health, deployment_id, label=f"Health gate for deployment {deployment_id}"
        )
        if not healthy:
            raise InfrastructureError(f"Health checks timed out for deployment {deployment_id}")
        logger.info(f"Health checks passed for deployment {deployment_id}")

    async def _open_critical_alerts(self, deployment_id: int) -> int:
        alerts = await self.deployment_manager.get_alerts(deployment_id, acknowledged=False)
        return len([a for a in alerts if a.severity == AlertSeverity.CRITICAL.value and a.resolved_at is None])

    async def handle_deployment_failure(self, deployment_id: int, error: Exception) -> None:
        await self.deployment_manager.update_deployment_status(deployment_id, DeploymentStatus.FAILED)
        await self.deployment_manager.create_alert({
            "deployment_id": deployment_id,
            "type": AlertType.SLO_BREACH,
            "severity": AlertSeverity.CRITICAL,
            "message": f"Deployment failed: {error}",
            "threshold": 0,
            "actual_value": 1,
        })
        if not self.config.auto_rollback_on_failure:
            return
        try:
            options = await self.rollback_orchestrator.get_one_click_rollback_options(deployment_id)
            if not options:
                logger.warning(f"No rollback target for failed deployment {deployment_id}")
                return
            await self.rollback_orchestrator.execute_rollback(
                deployment_id,
                options[0].version_id,
                "Automatic rollback due to deployment failure",
                "system",
            )
            logger.info(f"Automatic rollback initiated for deployment {deployment_id}")
        except Exception:
            logger.exception(f"Failed to initiate automatic rollback for deployment {deployment_id}")

    async def get_deployment_health(self, deployment_id: int) -> DeploymentHealth:
        deployment = await self.deployment_manager.get_deployment(deployment_id)
        if deployment is None:
            raise NotFoundError(f"Deployment {deployment_id} not found")

        alerts = await self.deployment_manager.get_alerts(deployment_id, acknowledged=False)
        active = [a for a in alerts if a.resolved_at is None]
        critical = [a for a in active if a.severity == AlertSeverity.CRITICAL.value]

        end = utcnow()
        metrics = await self.deployment_manager.get_metrics(deployment_id, end - HEALTH_METRICS_WINDOW, end)

        score = 100
        score -= len(critical) * 30
        score -= (len(active) - len(critical)) * 10
        latest = metrics[-1] if metrics else None
        if latest is not None:
            targets = deployment.slo_targets
            if latest.availability < targets["availability"]:
                score -= 20
            if latest.error_rate > targets["error_rate"]:
                score -= 15
            if latest.latency_p95 > targets["latency_p95"]:
                score -= 10

        return DeploymentHealth(
            status=deployment.status,
            health_score=max(0, score),
            active_alerts=len(active),
            critical_alerts=len(critical),
            last_metrics_timestamp=latest.timestamp if latest is not None else None,
        )
