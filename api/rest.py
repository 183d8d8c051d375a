import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from core.config import Settings, load_settings
from core.db import create_tables, dispose_engine, get_sessionmaker, init_engine
from core.services import Services, build_services
from models import DeploymentEnvironment, DeploymentStatus, Granularity
from models.enums import can_transition
from schemas.alert import AlertRead
from schemas.deployment import (
    DeploymentCreate,
    DeploymentHealth,
    DeploymentRead,
    DeploymentStatusUpdate,
    DeploymentUpdate,
)
from schemas.metrics import MetricsCreate, MetricsRead
from schemas.rollback import RollbackCreate, RollbackRead
from schemas.traffic_split import TrafficSplitCreate, TrafficSplitRead
from schemas.version import ModelVersionCreate, ModelVersionRead
from utils.clock import utcnow
from utils.exceptions import CustomException, InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None,
               resume_monitoring: bool = True) -> FastAPI:
    """services를 넘기면(테스트) startup에서 DB/서비스를 새로 만들지 않는다."""
    app = FastAPI(title="Operato Deployer", description="Model deployment rollout and rollback orchestrator")
    app.state.services = services
    app.state.owns_services = services is None

    @app.on_event("startup")
    async def on_startup():
        if app.state.services is not None:
            return
        current = settings or load_settings()
        init_engine(current.database_url)
        await create_tables()
        app.state.services = build_services(current, get_sessionmaker())
        if resume_monitoring:
            await app.state.services.monitor.resume_active()

    @app.on_event("shutdown")
    async def on_shutdown():
        if app.state.services is None or not app.state.owns_services:
            return
        await app.state.services.shutdown()
        await dispose_engine()

    def get_services(request: Request) -> Services:
        return request.app.state.services

    async def load_deployment(services: Services, deployment_id: int):
        deployment = await services.deployment_manager.get_deployment(deployment_id)
        if deployment is None:
            raise NotFoundError(f"Deployment {deployment_id} not found")
        return deployment

    async def to_read(services: Services, deployment) -> DeploymentRead:
        split = await services.deployment_manager.get_current_traffic_split(deployment.id)
        result = DeploymentRead.model_validate(deployment)
        result.traffic_split = split.percentage if split is not None else None
        return result

    # ------------------------------------------------------------------
    # model versions
    # ------------------------------------------------------------------
    @app.get("/api/versions", response_model=List[ModelVersionRead])
    async def list_versions(model_name: Optional[str] = None, services: Services = Depends(get_services)):
        return await services.version_registry.list_versions(model_name)

    @app.post("/api/versions", response_model=ModelVersionRead, status_code=201)
    async def register_version(request: ModelVersionCreate, services: Services = Depends(get_services)):
        return await services.version_registry.register_version(request)

    # ------------------------------------------------------------------
    # id가 아닌 리소스 경로 (traffic split / rollback / alert)
    # ------------------------------------------------------------------
    @app.put("/api/deployments/traffic-splits/{split_id}/complete", response_model=TrafficSplitRead)
    async def complete_traffic_split(split_id: int, services: Services = Depends(get_services)):
        split = await services.deployment_manager.complete_traffic_split(split_id)
        if split is None:
            raise NotFoundError(f"Traffic split {split_id} not found")
        return split

    @app.get("/api/deployments/rollbacks/{rollback_id}", response_model=RollbackRead)
    async def get_rollback(rollback_id: int, services: Services = Depends(get_services)):
        rollback = await services.rollback_orchestrator.get_rollback(rollback_id)
        if rollback is None:
            raise NotFoundError(f"Rollback {rollback_id} not found")
        return rollback

    @app.post("/api/deployments/rollbacks/{rollback_id}/cancel")
    async def cancel_rollback(rollback_id: int, services: Services = Depends(get_services)):
        cancelled = await services.rollback_orchestrator.cancel_rollback(rollback_id)
        return {"rollback_id": rollback_id, "cancelled": cancelled}

    @app.put("/api/deployments/alerts/{alert_id}/acknowledge", response_model=AlertRead)
    async def acknowledge_alert(alert_id: int, services: Services = Depends(get_services)):
        alert = await services.deployment_manager.acknowledge_alert(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    @app.put("/api/deployments/alerts/{alert_id}/resolve", response_model=AlertRead)
    async def resolve_alert(alert_id: int, services: Services = Depends(get_services)):
        alert = await services.deployment_manager.resolve_alert(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    # ------------------------------------------------------------------
    # deployments
    # ------------------------------------------------------------------
    @app.post("/api/deployments", response_model=DeploymentRead, status_code=201)
    async def create_deployment(request: DeploymentCreate, x_user: str = Header(default="api"),
                                services: Services = Depends(get_services)):
        deployment = await services.rollout_orchestrator.orchestrate_deployment(request, x_user)
        return await to_read(services, deployment)

    @app.get("/api/deployments", response_model=List[DeploymentRead])
    async def list_deployments(environment: Optional[DeploymentEnvironment] = None,
                               status: Optional[DeploymentStatus] = None,
                               version_id: Optional[int] = None,
                               deployed_by: Optional[str] = None,
                               start_date: Optional[datetime] = None,
                               end_date: Optional[datetime] = None,
                               limit: Optional[int] = None,
                               offset: Optional[int] = None,
                               services: Services = Depends(get_services)):
        deployments = await services.deployment_manager.list_deployments(
            environment=environment, status=status, version_id=version_id, deployed_by=deployed_by,
            start_date=start_date, end_date=end_date, limit=limit, offset=offset,
        )
        return [await to_read(services, d) for d in deployments]

    @app.get("/api/deployments/{deployment_id}", response_model=DeploymentRead)
    async def get_deployment(deployment_id: int, services: Services = Depends(get_services)):
        return await to_read(services, await load_deployment(services, deployment_id))

    @app.put("/api/deployments/{deployment_id}", response_model=DeploymentRead)
    async def update_deployment(deployment_id: int, request: DeploymentUpdate, services: Services = Depends(get_services)):
        deployment = await services.deployment_manager.update_deployment(deployment_id, request)
        if deployment is None:
            raise NotFoundError(f"Deployment {deployment_id} not found")
        return await to_read(services, deployment)

    @app.put("/api/deployments/{deployment_id}/status", response_model=DeploymentRead)
    async def update_deployment_status(deployment_id: int, request: DeploymentStatusUpdate,
                                       services: Services = Depends(get_services)):
        # 수동 변경은 전이표를 따른다 (읽은 status 그대로일 때만 반영)
        deployment = await load_deployment(services, deployment_id)
        if not can_transition(deployment.status, request.status):
            raise InvalidStateError(
                f"Cannot change deployment {deployment_id} from {deployment.status} to {request.status.value}"
            )
        deployment = await services.deployment_manager.update_deployment_status(
            deployment_id, request.status, expected=[deployment.status]
        )
        if request.status != DeploymentStatus.ACTIVE:
            await services.monitor.stop_monitoring(deployment_id)
        return await to_read(services, deployment)

    # traffic splits
    @app.post("/api/deployments/{deployment_id}/traffic-splits", response_model=TrafficSplitRead, status_code=201)
    async def create_traffic_split(deployment_id: int, request: TrafficSplitCreate,
                                   services: Services = Depends(get_services)):
        await load_deployment(services, deployment_id)
        return await services.deployment_manager.create_traffic_split(deployment_id, request.percentage)

    @app.get("/api/deployments/{deployment_id}/traffic-splits", response_model=List[TrafficSplitRead])
    async def get_traffic_splits(deployment_id: int, services: Services = Depends(get_services)):
        return await services.deployment_manager.get_traffic_splits(deployment_id)

    # rollbacks
    @app.post("/api/deployments/{deployment_id}/rollbacks", response_model=RollbackRead, status_code=202)
    async def execute_rollback(deployment_id: int, request: RollbackCreate, x_user: str = Header(default="api"),
                               services: Services = Depends(get_services)):
        return await services.rollback_orchestrator.execute_rollback(
            deployment_id, request.target_version_id, request.reason, x_user
        )

    @app.get("/api/deployments/{deployment_id}/rollbacks", response_model=List[RollbackRead])
    async def get_rollback_operations(deployment_id: int, services: Services = Depends(get_services)):
        return await services.deployment_manager.get_rollback_operations(deployment_id)

    @app.get("/api/deployments/{deployment_id}/rollback-options", response_model=List[DeploymentRead])
    async def get_rollback_options(deployment_id: int, services: Services = Depends(get_services)):
        options = await services.rollback_orchestrator.get_one_click_rollback_options(deployment_id)
        return [await to_read(services, d) for d in options]

    # monitoring
    @app.post("/api/deployments/{deployment_id}/monitoring/start")
    async def start_monitoring(deployment_id: int, services: Services = Depends(get_services)):
        started = await services.monitor.start_monitoring(deployment_id)
        return {"deployment_id": deployment_id, "monitoring": True, "started": started}

    @app.post("/api/deployments/{deployment_id}/monitoring/stop")
    async def stop_monitoring(deployment_id: int, services: Services = Depends(get_services)):
        stopped = await services.monitor.stop_monitoring(deployment_id)
        return {"deployment_id": deployment_id, "monitoring": False, "stopped": stopped}

    # metrics
    @app.post("/api/deployments/{deployment_id}/metrics", response_model=MetricsRead, status_code=201)
    async def record_metrics(deployment_id: int, request: MetricsCreate = Body(...),
                             services: Services = Depends(get_services)):
        return await services.deployment_manager.record_metrics(deployment_id, request)

    @app.get("/api/deployments/{deployment_id}/metrics", response_model=List[MetricsRead])
    async def get_metrics(deployment_id: int, start_time: Optional[datetime] = None,
                          end_time: Optional[datetime] = None, granularity: Optional[Granularity] = None,
                          services: Services = Depends(get_services)):
        end_time = end_time or utcnow()
        start_time = start_time or end_time - timedelta(hours=1)
        return await services.deployment_manager.get_metrics(deployment_id, start_time, end_time, granularity)

    # alerts / health
    @app.get("/api/deployments/{deployment_id}/alerts", response_model=List[AlertRead])
    async def get_alerts(deployment_id: int, acknowledged: Optional[bool] = None,
                         services: Services = Depends(get_services)):
        return await services.deployment_manager.get_alerts(deployment_id, acknowledged)

    @app.get("/api/deployments/{deployment_id}/health", response_model=DeploymentHealth)
    async def get_deployment_health(deployment_id: int, services: Services = Depends(get_services)):
        return await services.rollout_orchestrator.get_deployment_health(deployment_id)

    @app.exception_handler(CustomException)
    async def custom_exception_handler(request: Request, exc: CustomException):
        logger.error(f"[{exc.code}] {exc.dev_message} | {request.url}")
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict()
        )

    return app
