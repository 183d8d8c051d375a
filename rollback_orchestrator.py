"""
Rollback orchestrator.

execute_rollback은 전제조건을 동기적으로 검사하고 PENDING RollbackOperation을
만든 뒤 바로 반환한다. 실제 롤백 단계는 detached asyncio task에서 실행되며,
task 안의 모든 에러는 Deployment FAILED + RollbackOperation FAILED로 바뀐다.

cancel_rollback은 저장된 status만 FAILED로 바꾼다. 실행 중인 task는 다음
단계 경계(checkpoint)에서 이를 보고 멈춘다.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

from core.config import RollbackConfig
from deployment_manager import DeploymentManager
from models import Deployment, DeploymentStatus, DeploymentStrategy, RollbackOperation, RollbackStatus
from models.enums import TERMINAL_ROLLBACK_STATUSES
from retry_policy import PollingPolicy, RetryPolicy
from substrates.base import HealthProbe, TrafficRouter, WorkloadSubstrate
from utils.clock import utcnow
from utils.exceptions import (
    ConflictError,
    InfrastructureError,
    InvalidStateError,
    NotFoundError,
    RollbackVerificationError,
)
from version_registry import VersionRegistry

logger = logging.getLogger(__name__)

MAX_ROLLBACK_OPTIONS = 5
CANCELLED_MESSAGE = "Rollback cancelled by user"
TRAFFIC_SHIFT_STRATEGIES = {DeploymentStrategy.CANARY.value, DeploymentStrategy.BLUE_GREEN.value}
# 롤백 실패 시 FAILED로 덮어써도 되는 deployment status
ROLLBACK_FAILURE_SOURCES = [DeploymentStatus.ACTIVE, DeploymentStatus.FAILED, DeploymentStatus.ROLLING_BACK]


class RollbackCancelled(Exception):
    pass


class RollbackOrchestrator:
    def __init__(self, deployment_manager: DeploymentManager, version_registry: VersionRegistry,
                 workload: WorkloadSubstrate, traffic_router: TrafficRouter, health_probe: HealthProbe,
                 config: Optional[RollbackConfig] = None, monitor=None):
        self.deployment_manager = deployment_manager
        self.version_registry = version_registry
        self.workload = workload
        self.traffic_router = traffic_router
        self.health_probe = health_probe
        self.config = config or RollbackConfig()
        # SLOMonitor와 서로 참조하므로 wiring 단계에서 주입
        self.monitor = monitor
        self.verification_policy = PollingPolicy(
            attempts=self.config.health_check_retries,
            interval=self.config.health_check_interval_ms / 1000,
        )
        self.substrate_retry = RetryPolicy(
            max_retries=self.config.substrate_retries,
            delay=self.config.substrate_retry_delay_ms / 1000,
        )
        self._tasks: Set[asyncio.Task] = set()
        # deployment_id -> [lock, 대기+보유 중인 호출 수]
        self._admission_locks: Dict[int, list] = {}

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    async def execute_rollback(self, deployment_id: int, target_version_id: int, reason: str,
                               initiated_by: str) -> RollbackOperation:
        # 같은 deployment에 대한 동시 호출이 둘 다 전제조건을 통과하지 못하게 직렬화
        async with self._admission(deployment_id):
            deployment = await self.deployment_manager.get_deployment(deployment_id)
            if deployment is None:
                raise NotFoundError(f"Deployment {deployment_id} not found")
            if deployment.status == DeploymentStatus.ROLLING_BACK.value:
                raise ConflictError(f"Deployment {deployment_id} is already rolling back")
            active = await self.deployment_manager.get_active_rollback(deployment_id)
            if active is not None:
                raise ConflictError(f"Deployment {deployment_id} already has rollback {active.id} in progress")
            if deployment.status not in (DeploymentStatus.ACTIVE.value, DeploymentStatus.FAILED.value):
                raise InvalidStateError(f"Cannot rollback deployment {deployment_id} with status {deployment.status}")
            if not await self.version_registry.version_exists(target_version_id):
                raise NotFoundError(f"Target version {target_version_id} not found")
            rollback = await self.deployment_manager.create_rollback(deployment_id, target_version_id, reason, initiated_by)

        logger.warning(f"Rollback {rollback.id} requested for deployment {deployment_id} -> version "
                       f"{target_version_id} by {initiated_by}: {reason}")
        task = asyncio.create_task(
            self._run_rollback(rollback.id, deployment_id, target_version_id),
            name=f"rollback-{rollback.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return rollback

    async def get_rollback(self, rollback_id: int) -> Optional[RollbackOperation]:
        return await self.deployment_manager.get_rollback(rollback_id)

    async def cancel_rollback(self, rollback_id: int) -> bool:
        try:
            rollback = await self.deployment_manager.update_rollback_status(
                rollback_id,
                RollbackStatus.FAILED,
                CANCELLED_MESSAGE,
                expected=[RollbackStatus.PENDING, RollbackStatus.IN_PROGRESS],
            )
        except InvalidStateError:
            return False
        if rollback is None:
            return False
        logger.warning(f"Rollback {rollback_id} for deployment {rollback.deployment_id} cancelled")
        return True

    async def get_one_click_rollback_options(self, deployment_id: int) -> List[Deployment]:
        deployment = await self.deployment_manager.get_deployment(deployment_id)
        if deployment is None:
            raise NotFoundError(f"Deployment {deployment_id} not found")
        candidates = await self.deployment_manager.list_deployments(
            environment=deployment.environment,
            status=DeploymentStatus.ACTIVE,
            limit=MAX_ROLLBACK_OPTIONS + 1,
        )
        return [d for d in candidates if d.id != deployment_id][:MAX_ROLLBACK_OPTIONS]

    async def verify_rollback_success(self, deployment_id: int, target_version_id: int) -> bool:
        async def attempt():
            if not await self.health_probe.check_health(deployment_id):
                return False
            return await self.health_probe.check_deployed_version(deployment_id, target_version_id)

        return await self.verification_policy.until_true(
            attempt, label=f"Rollback verification for deployment {deployment_id}"
        )

    async def prepare_rollback_configuration(self, deployment: Deployment, target_version_id: int) -> Dict[str, Any]:
        version = await self.version_registry.get_version(target_version_id)
        if version is None:
            raise NotFoundError(f"Target version {target_version_id} not found")
        config = dict(deployment.configuration or {})
        config.update({
            "version": version.version,
            "version_id": version.id,
            "artifact_uri": version.artifact_uri,
            "rollback_timestamp": utcnow().isoformat(),
        })
        return config

    async def join(self) -> None:
        """진행 중인 detached rollback task가 모두 끝날 때까지 기다린다."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.join()

    @asynccontextmanager
    async def _admission(self, deployment_id: int):
        entry = self._admission_locks.setdefault(deployment_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            # 아무도 기다리지 않으면 lock을 버린다
            if entry[1] == 0:
                del self._admission_locks[deployment_id]

    # ------------------------------------------------------------------
    # detached task
    # ------------------------------------------------------------------
    async def _run_rollback(self, rollback_id: int, deployment_id: int, target_version_id: int) -> None:
        try:
            await self._perform_rollback(rollback_id, deployment_id, target_version_id)
        except RollbackCancelled:
            # ROLLING_BACK까지 간 경우만 FAILED, 단계 a 이전 취소는 deployment를 그대로 둔다
            logger.warning(f"Rollback {rollback_id} stopped after cancellation")
            await self._mark_deployment_failed(deployment_id, expected=[DeploymentStatus.ROLLING_BACK])
        except asyncio.CancelledError:
            logger.warning(f"Rollback {rollback_id} interrupted by shutdown")
            await self._mark_failed(rollback_id, deployment_id, "Rollback interrupted by shutdown")
            raise
        except Exception as e:
            logger.exception(f"Rollback {rollback_id} for deployment {deployment_id} failed")
            await self._mark_failed(rollback_id, deployment_id, str(e) or e.__class__.__name__)

    async def _perform_rollback(self, rollback_id: int, deployment_id: int, target_version_id: int) -> None:
        dm = self.deployment_manager

        # a. IN_PROGRESS / ROLLING_BACK
        try:
            await dm.update_rollback_status(rollback_id, RollbackStatus.IN_PROGRESS, expected=[RollbackStatus.PENDING])
        except InvalidStateError:
            raise RollbackCancelled(rollback_id)
        deployment = await dm.update_deployment_status(
            deployment_id,
            DeploymentStatus.ROLLING_BACK,
            expected=[DeploymentStatus.ACTIVE, DeploymentStatus.FAILED],
        )
        if deployment is None:
            raise NotFoundError(f"Deployment {deployment_id} not found")

        # b. monitor 정지 (없으면 no-op)
        if self.monitor is not None:
            await self.monitor.stop_monitoring(deployment_id)

        shifts_traffic = deployment.strategy in TRAFFIC_SHIFT_STRATEGIES

        # c. 문제 버전에서 트래픽 빼기
        if shifts_traffic:
            await self._checkpoint(rollback_id)
            await self._shift_traffic(deployment_id, 0)

        # d. target 버전 설정 준비 및 재배포
        await self._checkpoint(rollback_id)
        config = await self.prepare_rollback_configuration(deployment, target_version_id)
        await self._deploy_target(deployment_id, target_version_id, config)

        # e. 복구된 버전으로 트래픽 복원
        if shifts_traffic:
            await self._checkpoint(rollback_id)
            await self._shift_traffic(deployment_id, 100)

        # f. health + version 확인
        await self._checkpoint(rollback_id)
        if not await self.verify_rollback_success(deployment_id, target_version_id):
            raise RollbackVerificationError("Rollback verification failed")

        # g. 완료
        await self._checkpoint(rollback_id)
        await dm.update_deployment_status(
            deployment_id, DeploymentStatus.ROLLED_BACK, expected=[DeploymentStatus.ROLLING_BACK]
        )
        try:
            await dm.update_rollback_status(rollback_id, RollbackStatus.COMPLETED, expected=[RollbackStatus.IN_PROGRESS])
        except InvalidStateError:
            logger.warning(f"Rollback {rollback_id} was cancelled while completing; keeping cancellation")
            return
        logger.info(f"Rollback {rollback_id} completed: deployment {deployment_id} runs version {target_version_id}")
        await self._restart_monitoring(deployment_id)

    async def _checkpoint(self, rollback_id: int) -> None:
        rollback = await self.deployment_manager.get_rollback(rollback_id)
        if rollback is None or RollbackStatus(rollback.status) in TERMINAL_ROLLBACK_STATUSES:
            raise RollbackCancelled(rollback_id)

    async def _shift_traffic(self, deployment_id: int, percentage: int) -> None:
        async def attempt():
            if not await self.traffic_router.shift_traffic(deployment_id, percentage):
                raise InfrastructureError(f"Traffic substrate failed to shift deployment {deployment_id} to {percentage}%")

        await self.substrate_retry.execute_with_retry(attempt)
        current = await self.deployment_manager.get_current_traffic_split(deployment_id)
        if current is not None:
            await self.deployment_manager.complete_traffic_split(current.id)
        await self.deployment_manager.create_traffic_split(deployment_id, percentage)

    async def _deploy_target(self, deployment_id: int, target_version_id: int, config: Dict[str, Any]) -> None:
        async def attempt():
            if not await self.workload.deploy_version(deployment_id, target_version_id, config):
                raise InfrastructureError(
                    f"Workload substrate failed to deploy version {target_version_id} for deployment {deployment_id}"
                )

        await self.substrate_retry.execute_with_retry(attempt)

    async def _restart_monitoring(self, deployment_id: int) -> None:
        if self.monitor is None:
            return
        try:
            await self.monitor.start_monitoring(deployment_id, restored=True)
        except Exception:
            logger.exception(f"Could not restart monitoring for deployment {deployment_id} after rollback")

    async def _mark_failed(self, rollback_id: int, deployment_id: int, message: str) -> None:
        await self._mark_deployment_failed(deployment_id, expected=ROLLBACK_FAILURE_SOURCES)
        try:
            await self.deployment_manager.update_rollback_status(
                rollback_id,
                RollbackStatus.FAILED,
                message,
                expected=[RollbackStatus.PENDING, RollbackStatus.IN_PROGRESS],
            )
        except InvalidStateError:
            # 이미 취소/종료된 operation은 그대로 둔다
            pass
        except Exception:
            logger.exception(f"Could not mark rollback {rollback_id} as failed")

    async def _mark_deployment_failed(self, deployment_id: int, expected) -> None:
        try:
            deployment = await self.deployment_manager.update_deployment_status(
                deployment_id, DeploymentStatus.FAILED, expected=expected
            )
        except InvalidStateError as e:
            logger.info(f"Deployment {deployment_id} left as is: {e}")
            return
        except Exception:
            logger.exception(f"Could not mark deployment {deployment_id} as failed")
            return
        # FAILED deployment는 감시하지 않는다
        if deployment is not None and self.monitor is not None:
            try:
                await self.monitor.stop_monitoring(deployment_id)
            except Exception:
                logger.exception(f"Could not stop monitoring for failed deployment {deployment_id}")
