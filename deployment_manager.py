"""
Deployment lifecycle manager.

Deployment, traffic split, rollback, metrics, alert 레코드의 저장/조회를 담당한다.
모든 호출은 session factory에서 세션을 새로 열고 단일 row 트랜잭션으로 끝난다.
(detached rollback task, monitor loop가 동시에 호출하므로 세션을 공유하지 않는다)

update_deployment_status는 전이표를 검사하지 않는다. 상태 머신은 호출자
(RollbackOrchestrator, SLOMonitor, RolloutOrchestrator)가 지킨다.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from itertools import groupby
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.future import select

from models import (
    AlertSeverity,
    AlertType,
    Deployment,
    DeploymentAlert,
    DeploymentMetrics,
    DeploymentStatus,
    Granularity,
    RollbackOperation,
    RollbackStatus,
    TrafficSplit,
)
from models.enums import TERMINAL_ROLLBACK_STATUSES
from schemas.alert import AlertCreate
from schemas.deployment import DeploymentCreate, DeploymentQuery, DeploymentUpdate
from schemas.metrics import MetricsCreate
from utils.clock import utcnow
from utils.exceptions import (
    ConflictError,
    InfrastructureError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _store_error(e: SQLAlchemyError, action: str) -> Exception:
    if isinstance(e, IntegrityError):
        reason = str(e.orig).lower()
        if "foreign key" in reason:
            return NotFoundError(f"Referenced record does not exist ({action})", dev_message=str(e))
        return ConflictError(f"Conflicting record ({action})", dev_message=str(e))
    return InfrastructureError(f"Store failure ({action})", dev_message=str(e))


def _validate(schema, payload, what: str):
    if isinstance(payload, schema):
        return payload
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {what}", dev_message=str(e))


def _truncate(ts: datetime, granularity: Granularity) -> datetime:
    if granularity == Granularity.MINUTE:
        return ts.replace(second=0, microsecond=0)
    if granularity == Granularity.HOUR:
        return ts.replace(minute=0, second=0, microsecond=0)
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def average_metrics(samples: List[DeploymentMetrics], timestamp: Optional[datetime] = None) -> DeploymentMetrics:
    """샘플 평균. request_count는 합계, drift는 값이 있는 샘플끼리만 평균한다."""
    if not samples:
        raise ValueError("No metrics to calculate average")
    count = len(samples)

    def avg(attr):
        return sum(getattr(s, attr) for s in samples) / count

    def avg_optional(attr):
        values = [getattr(s, attr) for s in samples if getattr(s, attr) is not None]
        return sum(values) / len(values) if values else None

    return DeploymentMetrics(
        deployment_id=samples[0].deployment_id,
        timestamp=timestamp or samples[-1].timestamp,
        availability=avg("availability"),
        latency_p95=avg("latency_p95"),
        latency_p99=avg("latency_p99"),
        error_rate=avg("error_rate"),
        input_drift=avg_optional("input_drift"),
        output_drift=avg_optional("output_drift"),
        performance_drift=avg_optional("performance_drift"),
        request_count=sum(s.request_count for s in samples),
    )


class DeploymentManager:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self, action: str):
        try:
            async with self.session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(f"Store failure while trying to {action}: {e}")
            raise _store_error(e, action) from e

    # ------------------------------------------------------------------
    # deployments
    # ------------------------------------------------------------------
    async def create_deployment(self, request: Union[DeploymentCreate, Dict[str, Any]], deployed_by: str) -> Deployment:
        request = _validate(DeploymentCreate, request, "deployment request")
        if not deployed_by:
            raise ValidationError("deployed_by is required")
        deployment = Deployment(
            version_id=request.version_id,
            environment=request.environment.value,
            status=DeploymentStatus.PENDING.value,
            strategy=request.strategy.value,
            configuration=request.configuration.model_dump(),
            slo_targets=request.slo_targets.model_dump(),
            drift_thresholds=request.drift_thresholds.model_dump(),
            deployed_by=deployed_by,
        )
        async with self._session("create deployment") as db:
            db.add(deployment)
            await db.commit()
            await db.refresh(deployment)
        logger.info(f"Deployment {deployment.id} created for version {deployment.version_id} "
                    f"({deployment.environment}/{deployment.strategy}) by {deployed_by}")
        return deployment

    async def get_deployment(self, deployment_id: int) -> Optional[Deployment]:
        async with self._session("load deployment") as db:
            return await db.get(Deployment, deployment_id)

    async def list_deployments(self, query: Optional[DeploymentQuery] = None, **filters) -> List[Deployment]:
        if query is None:
            query = _validate(DeploymentQuery, filters, "deployment query")
        stmt = select(Deployment)
        if query.environment:
            stmt = stmt.where(Deployment.environment == query.environment.value)
        if query.status:
            stmt = stmt.where(Deployment.status == query.status.value)
        if query.version_id is not None:
            stmt = stmt.where(Deployment.version_id == query.version_id)
        if query.deployed_by:
            stmt = stmt.where(Deployment.deployed_by == query.deployed_by)
        if query.start_date:
            stmt = stmt.where(Deployment.deployed_at >= query.start_date)
        if query.end_date:
            stmt = stmt.where(Deployment.deployed_at <= query.end_date)
        stmt = stmt.order_by(Deployment.deployed_at.desc(), Deployment.id.desc())
        if query.limit:
            stmt = stmt.limit(query.limit)
        if query.offset:
            stmt = stmt.offset(query.offset)
        async with self._session("list deployments") as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def update_deployment(self, deployment_id: int, request: Union[DeploymentUpdate, Dict[str, Any]]) -> Optional[Deployment]:
        request = _validate(DeploymentUpdate, request, "deployment update")
        async with self._session("update deployment") as db:
            deployment = await db.get(Deployment, deployment_id)
            if deployment is None:
                return None
            changed = False
            for attr in ["configuration", "slo_targets", "drift_thresholds"]:
                value = getattr(request, attr)
                if value is not None:
                    setattr(deployment, attr, value.model_dump())
                    changed = True
            if changed:
                deployment.updated_at = utcnow()
                await db.commit()
            return deployment

    async def update_deployment_status(self, deployment_id: int, status: DeploymentStatus,
                                       expected: Optional[Iterable[DeploymentStatus]] = None) -> Optional[Deployment]:
        """status 덮어쓰기. expected를 주면 현재 status가 그 안에 있을 때만 바꾼다."""
        status = DeploymentStatus(status)
        stmt = update(Deployment).where(Deployment.id == deployment_id)
        if expected is not None:
            allowed = [DeploymentStatus(s).value for s in expected]
            stmt = stmt.where(Deployment.status.in_(allowed))
        stmt = stmt.values(status=status.value, updated_at=utcnow())
        async with self._session("update deployment status") as db:
            result = await db.execute(stmt)
            await db.commit()
            deployment = await db.get(Deployment, deployment_id, populate_existing=True)
            if deployment is None:
                return None
            if result.rowcount == 0:
                raise InvalidStateError(
                    f"Deployment {deployment_id} is {deployment.status}, expected one of {allowed}"
                )
        logger.info(f"Deployment {deployment_id} status -> {status.value}")
        return deployment

    # ------------------------------------------------------------------
    # traffic splits
    # ------------------------------------------------------------------
    async def create_traffic_split(self, deployment_id: int, percentage: int) -> TrafficSplit:
        if isinstance(percentage, bool) or not isinstance(percentage, int) or not 0 <= percentage <= 100:
            raise ValidationError(f"Traffic percentage must be an integer in [0, 100], got {percentage!r}")
        split = TrafficSplit(deployment_id=deployment_id, percentage=percentage)
        async with self._session("create traffic split") as db:
            db.add(split)
            await db.commit()
            await db.refresh(split)
        logger.info(f"Deployment {deployment_id} traffic split {percentage}% recorded")
        return split

    async def get_traffic_splits(self, deployment_id: int) -> List[TrafficSplit]:
        stmt = (
            select(TrafficSplit)
            .where(TrafficSplit.deployment_id == deployment_id)
            .order_by(TrafficSplit.started_at.desc(), TrafficSplit.id.desc())
        )
        async with self._session("list traffic splits") as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_current_traffic_split(self, deployment_id: int) -> Optional[TrafficSplit]:
        stmt = (
            select(TrafficSplit)
            .where(TrafficSplit.deployment_id == deployment_id, TrafficSplit.completed_at.is_(None))
            .order_by(TrafficSplit.started_at.desc(), TrafficSplit.id.desc())
            .limit(1)
        )
        async with self._session("load current traffic split") as db:
            result = await db.execute(stmt)
            return result.scalars().first()

    async def complete_traffic_split(self, split_id: int) -> Optional[TrafficSplit]:
        async with self._session("complete traffic split") as db:
            split = await db.get(TrafficSplit, split_id)
            if split is None:
                return None
            split.completed_at = utcnow()
            await db.commit()
            return split

    # ------------------------------------------------------------------
    # rollback operations
    # ------------------------------------------------------------------
    async def create_rollback(self, deployment_id: int, target_version_id: int, reason: str, initiated_by: str) -> RollbackOperation:
        if not reason or not reason.strip():
            raise ValidationError("Rollback reason is required")
        if not initiated_by:
            raise ValidationError("initiated_by is required")
        rollback = RollbackOperation(
            deployment_id=deployment_id,
            target_version_id=target_version_id,
            reason=reason,
            status=RollbackStatus.PENDING.value,
            initiated_by=initiated_by,
        )
        async with self._session("create rollback operation") as db:
            db.add(rollback)
            await db.commit()
            await db.refresh(rollback)
        return rollback

    async def get_rollback(self, rollback_id: int) -> Optional[RollbackOperation]:
        async with self._session("load rollback operation") as db:
            return await db.get(RollbackOperation, rollback_id)

    async def get_rollback_operations(self, deployment_id: int) -> List[RollbackOperation]:
        stmt = (
            select(RollbackOperation)
            .where(RollbackOperation.deployment_id == deployment_id)
            .order_by(RollbackOperation.initiated_at.desc(), RollbackOperation.id.desc())
        )
        async with self._session("list rollback operations") as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_active_rollback(self, deployment_id: int) -> Optional[RollbackOperation]:
        stmt = (
            select(RollbackOperation)
            .where(
                RollbackOperation.deployment_id == deployment_id,
                RollbackOperation.status.in_([RollbackStatus.PENDING.value, RollbackStatus.IN_PROGRESS.value]),
            )
            .order_by(RollbackOperation.id.desc())
            .limit(1)
        )
        async with self._session("load active rollback operation") as db:
            result = await db.execute(stmt)
            return result.scalars().first()

    async def update_rollback_status(self, rollback_id: int, status: RollbackStatus, error_message: Optional[str] = None,
                                     expected: Optional[Iterable[RollbackStatus]] = None) -> Optional[RollbackOperation]:
        status = RollbackStatus(status)
        values = {"status": status.value, "error_message": error_message}
        if status in TERMINAL_ROLLBACK_STATUSES:
            values["completed_at"] = utcnow()
        stmt = update(RollbackOperation).where(RollbackOperation.id == rollback_id)
        if expected is not None:
            allowed = [RollbackStatus(s).value for s in expected]
            stmt = stmt.where(RollbackOperation.status.in_(allowed))
        stmt = stmt.values(**values)
        async with self._session("update rollback status") as db:
            result = await db.execute(stmt)
            await db.commit()
            rollback = await db.get(RollbackOperation, rollback_id, populate_existing=True)
            if rollback is None:
                return None
            if result.rowcount == 0:
                raise InvalidStateError(
                    f"Rollback {rollback_id} is {rollback.status}, expected one of {allowed}"
                )
        logger.info(f"Rollback {rollback_id} status -> {status.value}")
        return rollback

    # ------------------------------------------------------------------
    # metrics
    # ------------------------------------------------------------------
    async def record_metrics(self, deployment_id: int, sample: Union[MetricsCreate, Dict[str, Any]]) -> DeploymentMetrics:
        sample = _validate(MetricsCreate, sample, "metrics sample")
        data = sample.model_dump()
        if data["timestamp"] is None:
            data["timestamp"] = utcnow()
        metrics = DeploymentMetrics(deployment_id=deployment_id, **data)
        async with self._session("record metrics") as db:
            db.add(metrics)
            await db.commit()
            await db.refresh(metrics)
        return metrics

    async def get_metrics(self, deployment_id: int, start_time: datetime, end_time: datetime,
                          granularity: Optional[Granularity] = None) -> List[DeploymentMetrics]:
        stmt = (
            select(DeploymentMetrics)
            .where(
                DeploymentMetrics.deployment_id == deployment_id,
                DeploymentMetrics.timestamp >= start_time,
                DeploymentMetrics.timestamp <= end_time,
            )
            .order_by(DeploymentMetrics.timestamp.asc(), DeploymentMetrics.id.asc())
        )
        async with self._session("query metrics") as db:
            result = await db.execute(stmt)
            samples = list(result.scalars().all())
        if granularity is None:
            return samples
        granularity = Granularity(granularity)
        # 버킷별 평균 (request_count는 합계)
        return [
            average_metrics(list(bucket_samples), timestamp=bucket)
            for bucket, bucket_samples in groupby(samples, key=lambda s: _truncate(s.timestamp, granularity))
        ]

    # ------------------------------------------------------------------
    # alerts
    # ------------------------------------------------------------------
    async def create_alert(self, alert: Union[AlertCreate, Dict[str, Any]]) -> DeploymentAlert:
        alert = _validate(AlertCreate, alert, "alert")
        row = DeploymentAlert(
            deployment_id=alert.deployment_id,
            type=AlertType(alert.type).value,
            severity=AlertSeverity(alert.severity).value,
            message=alert.message,
            threshold=alert.threshold,
            actual_value=alert.actual_value,
            acknowledged=False,
        )
        async with self._session("create alert") as db:
            db.add(row)
            await db.commit()
            await db.refresh(row)
        logger.warning(f"Alert {row.id} [{row.severity}] {row.type} on deployment {row.deployment_id}: {row.message}")
        return row

    async def get_alerts(self, deployment_id: int, acknowledged: Optional[bool] = None) -> List[DeploymentAlert]:
        stmt = select(DeploymentAlert).where(DeploymentAlert.deployment_id == deployment_id)
        if acknowledged is not None:
            stmt = stmt.where(DeploymentAlert.acknowledged == acknowledged)
        stmt = stmt.order_by(DeploymentAlert.triggered_at.desc(), DeploymentAlert.id.desc())
        async with self._session("list alerts") as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def acknowledge_alert(self, alert_id: int) -> Optional[DeploymentAlert]:
        async with self._session("acknowledge alert") as db:
            alert = await db.get(DeploymentAlert, alert_id)
            if alert is None:
                return None
            alert.acknowledged = True
            await db.commit()
            return alert

    async def resolve_alert(self, alert_id: int) -> Optional[DeploymentAlert]:
        async with self._session("resolve alert") as db:
            alert = await db.get(DeploymentAlert, alert_id)
            if alert is None:
                return None
            alert.resolved_at = utcnow()
            await db.commit()
            return alert
