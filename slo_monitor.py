"""
SLO / drift monitor.

ACTIVE deployment마다 두 개의 periodic task(SLO, drift)를 돌린다. 각 check는
최근 window의 metrics 평균을 deployment의 목표치와 비교해 alert를 만들고,
cooldown 안에 breach가 auto_rollback_threshold 번 쌓이면 자동 롤백을 건다.
check 안의 모든 에러는 로그만 남긴다.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from core.config import MonitoringConfig
from deployment_manager import DeploymentManager, average_metrics
from models import AlertSeverity, AlertType, DeploymentAlert, DeploymentMetrics, DeploymentStatus, RollbackOperation
from utils.clock import utcnow
from utils.exceptions import InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

# (type, severity, message, threshold, actual_value)
Breach = Tuple[AlertType, AlertSeverity, str, float, float]

DRIFT_FIELDS = [
    ("input_drift", "Input drift"),
    ("output_drift", "Output drift"),
    ("performance_drift", "Performance drift"),
]


def evaluate_slo(current: DeploymentMetrics, targets: dict) -> List[Breach]:
    breaches = []
    availability = targets["availability"]
    if current.availability < availability:
        severity = AlertSeverity.CRITICAL if current.availability < availability - 1 else AlertSeverity.WARNING
        breaches.append((
            AlertType.LOW_AVAILABILITY, severity,
            f"Availability {current.availability:.2f}% is below target {availability}%",
            availability, current.availability,
        ))
    for attr, label in [("latency_p95", "P95"), ("latency_p99", "P99")]:
        target = targets[attr]
        actual = getattr(current, attr)
        if actual > target:
            severity = AlertSeverity.CRITICAL if actual > target * 1.5 else AlertSeverity.WARNING
            breaches.append((
                AlertType.HIGH_LATENCY, severity,
                f"{label} latency {actual:.1f}ms exceeds target {target}ms",
                target, actual,
            ))
    error_rate = targets["error_rate"]
    if current.error_rate > error_rate:
        severity = AlertSeverity.CRITICAL if current.error_rate > error_rate * 2 else AlertSeverity.WARNING
        breaches.append((
            AlertType.HIGH_ERROR_RATE, severity,
            f"Error rate {current.error_rate:.2f}% exceeds target {error_rate}%",
            error_rate, current.error_rate,
        ))
    return breaches


def evaluate_drift(current: DeploymentMetrics, thresholds: dict) -> List[Breach]:
    breaches = []
    for attr, label in DRIFT_FIELDS:
        actual = getattr(current, attr)
        threshold = thresholds[attr]
        # drift 값이 없는 샘플 구간은 건너뜀
        if actual is not None and actual > threshold:
            breaches.append((
                AlertType.DRIFT_DETECTED, AlertSeverity.WARNING,
                f"{label} {actual:.3f} exceeds threshold {threshold}",
                threshold, actual,
            ))
    return breaches


class _Watch:
    def __init__(self, slo_task: asyncio.Task, drift_task: asyncio.Task):
        self.slo_task = slo_task
        self.drift_task = drift_task

    @property
    def tasks(self) -> List[asyncio.Task]:
        return [self.slo_task, self.drift_task]


class SLOMonitor:
    def __init__(self, deployment_manager: DeploymentManager, rollback_orchestrator=None,
                 config: Optional[MonitoringConfig] = None, clock: Callable[[], datetime] = utcnow):
        self.deployment_manager = deployment_manager
        self.rollback_orchestrator = rollback_orchestrator
        self.config = config or MonitoringConfig()
        self.clock = clock
        self._watches: Dict[int, _Watch] = {}
        self._lock = asyncio.Lock()
        self._breaches: Dict[int, List[datetime]] = defaultdict(list)
        self._suppressed_until: Dict[int, datetime] = {}

    @property
    def cooldown(self) -> timedelta:
        return timedelta(milliseconds=self.config.alert_cooldown_ms)

    def is_monitoring(self, deployment_id: int) -> bool:
        return deployment_id in self._watches

    def monitored_deployments(self) -> List[int]:
        return list(self._watches)

    async def start_monitoring(self, deployment_id: int, restored: bool = False) -> bool:
        """watch 시작. 이미 watch 중이면 False.

        restored=True 는 롤백 완료 후 복구된 버전(ROLLED_BACK)을 다시 감시할 때 쓴다.
        """
        allowed = {DeploymentStatus.ACTIVE.value}
        if restored:
            allowed.add(DeploymentStatus.ROLLED_BACK.value)
        deployment = await self.deployment_manager.get_deployment(deployment_id)
        if deployment is None or deployment.status not in allowed:
            raise InvalidStateError(f"Deployment {deployment_id} not found or not active")

        async with self._lock:
            if deployment_id in self._watches:
                return False
            slo_task = asyncio.create_task(
                self._run_periodically(deployment_id, self.config.slo_check_interval_ms, self.check_slos),
                name=f"slo-check-{deployment_id}",
            )
            drift_task = asyncio.create_task(
                self._run_periodically(deployment_id, self.config.drift_check_interval_ms, self.check_drift),
                name=f"drift-check-{deployment_id}",
            )
            self._watches[deployment_id] = _Watch(slo_task, drift_task)
        logger.info(f"Monitoring started for deployment {deployment_id}")
        return True

    async def stop_monitoring(self, deployment_id: int) -> bool:
        async with self._lock:
            watch = self._watches.pop(deployment_id, None)
            self._breaches.pop(deployment_id, None)
            # 아직 유효한 suppression은 stop/start 뒤에도 남긴다
            self._prune_suppressions(self.clock())
        if watch is None:
            return False
        current = asyncio.current_task()
        for task in watch.tasks:
            task.cancel()
        # check 안에서 stop을 부른 경우 자기 자신은 기다리지 않는다
        others = [t for t in watch.tasks if t is not current]
        await asyncio.gather(*others, return_exceptions=True)
        logger.info(f"Monitoring stopped for deployment {deployment_id}")
        return True

    async def shutdown(self) -> None:
        for deployment_id in list(self._watches):
            await self.stop_monitoring(deployment_id)

    async def resume_active(self) -> int:
        """프로세스 시작 시 ACTIVE deployment들의 watch를 복구"""
        deployments = await self.deployment_manager.list_deployments(status=DeploymentStatus.ACTIVE)
        started = 0
        for deployment in deployments:
            try:
                if await self.start_monitoring(deployment.id):
                    started += 1
            except InvalidStateError as e:
                logger.warning(f"Skip resuming monitor: {e}")
        logger.info(f"Resumed monitoring for {started} active deployment(s)")
        return started

    async def _run_periodically(self, deployment_id: int, interval_ms: int, check) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            await check(deployment_id)

    async def check_slos(self, deployment_id: int) -> List[DeploymentAlert]:
        try:
            deployment = await self.deployment_manager.get_deployment(deployment_id)
            if deployment is None:
                logger.warning(f"SLO check skipped: deployment {deployment_id} no longer exists")
                return []
            current = await self._window_average(deployment_id, self.config.slo_window_ms)
            if current is None:
                return []
            return await self._raise_alerts(deployment_id, evaluate_slo(current, deployment.slo_targets))
        except Exception:
            logger.exception(f"SLO check failed for deployment {deployment_id}")
            return []

    async def check_drift(self, deployment_id: int) -> List[DeploymentAlert]:
        try:
            deployment = await self.deployment_manager.get_deployment(deployment_id)
            if deployment is None:
                logger.warning(f"Drift check skipped: deployment {deployment_id} no longer exists")
                return []
            current = await self._window_average(deployment_id, self.config.drift_window_ms)
            if current is None:
                return []
            return await self._raise_alerts(deployment_id, evaluate_drift(current, deployment.drift_thresholds))
        except Exception:
            logger.exception(f"Drift check failed for deployment {deployment_id}")
            return []

    async def _window_average(self, deployment_id: int, window_ms: int) -> Optional[DeploymentMetrics]:
        end = self.clock()
        start = end - timedelta(milliseconds=window_ms)
        samples = await self.deployment_manager.get_metrics(deployment_id, start, end)
        if not samples:
            return None
        return average_metrics(samples, timestamp=end)

    async def _raise_alerts(self, deployment_id: int, breaches: List[Breach]) -> List[DeploymentAlert]:
        alerts = []
        for alert_type, severity, message, threshold, actual in breaches:
            alerts.append(await self.deployment_manager.create_alert({
                "deployment_id": deployment_id,
                "type": alert_type,
                "severity": severity,
                "message": message,
                "threshold": threshold,
                "actual_value": actual,
            }))
        if alerts:
            await self._register_breaches(deployment_id, len(alerts), alerts[-1].message)
        return alerts

    async def _register_breaches(self, deployment_id: int, count: int, last_message: str) -> None:
        now = self.clock()
        recent = [t for t in self._breaches[deployment_id] if now - t <= self.cooldown]
        recent.extend([now] * count)
        self._breaches[deployment_id] = recent

        if not self.config.auto_rollback_enabled:
            return
        self._prune_suppressions(now)
        suppressed_until = self._suppressed_until.get(deployment_id)
        if suppressed_until is not None and now < suppressed_until:
            return
        if len(recent) < self.config.auto_rollback_threshold:
            return

        self._breaches[deployment_id] = []
        self._suppressed_until[deployment_id] = now + self.cooldown
        reason = (f"Automatic rollback: {len(recent)} breaches within "
                  f"{self.config.alert_cooldown_ms // 1000}s (last: {last_message})")
        try:
            await self.trigger_rollback(deployment_id, reason, "system")
        except Exception:
            logger.exception(f"Automatic rollback failed to start for deployment {deployment_id}")

    def _prune_suppressions(self, now: datetime) -> None:
        expired = [d for d, until in self._suppressed_until.items() if now >= until]
        for deployment_id in expired:
            del self._suppressed_until[deployment_id]

    async def trigger_rollback(self, deployment_id: int, reason: str, initiated_by: str) -> RollbackOperation:
        deployment = await self.deployment_manager.get_deployment(deployment_id)
        if deployment is None:
            raise NotFoundError(f"Deployment {deployment_id} not found")
        # self가 ACTIVE라도 하나만 더 보면 충분
        candidates = await self.deployment_manager.list_deployments(
            environment=deployment.environment,
            status=DeploymentStatus.ACTIVE,
            limit=2,
        )
        previous = next((d for d in candidates if d.id != deployment_id), None)
        if previous is None:
            raise NotFoundError("No previous deployment found for rollback")
        logger.warning(f"Triggering rollback of deployment {deployment_id} to version {previous.version_id} "
                       f"(deployment {previous.id}): {reason}")
        return await self.rollback_orchestrator.execute_rollback(
            deployment_id, previous.version_id, reason, initiated_by
        )
