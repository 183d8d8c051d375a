from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict
from datetime import datetime
from models.enums import DeploymentEnvironment, DeploymentStatus, DeploymentStrategy


class ResourceSpec(BaseModel):
    cpu: str
    memory: str


class HealthCheckSpec(BaseModel):
    path: str
    port: int = Field(gt=0, lt=65536)
    initial_delay_seconds: int = 30
    period_seconds: int = 10
    timeout_seconds: int = 5
    failure_threshold: int = 3


class RolloutPolicy(BaseModel):
    max_unavailable: str = "25%"
    max_surge: str = "25%"
    progress_deadline_seconds: int = 600


class DeploymentConfiguration(BaseModel):
    replicas: int = Field(ge=1)
    resources: ResourceSpec
    health_check: HealthCheckSpec
    rollout_policy: RolloutPolicy = Field(default_factory=RolloutPolicy)
    environment: Dict[str, str] = {}


class SLOTargets(BaseModel):
    availability: float = Field(ge=0, le=100)  # %
    latency_p95: float = Field(ge=0)  # ms
    latency_p99: float = Field(ge=0)  # ms
    error_rate: float = Field(ge=0, le=100)  # %


class DriftThresholds(BaseModel):
    input_drift: float = Field(ge=0)
    output_drift: float = Field(ge=0)
    performance_drift: float = Field(ge=0)


class DeploymentCreate(BaseModel):
    version_id: int
    environment: DeploymentEnvironment
    strategy: DeploymentStrategy
    configuration: DeploymentConfiguration
    slo_targets: SLOTargets
    drift_thresholds: DriftThresholds


# environment, strategy는 생성 후 변경 불가
class DeploymentUpdate(BaseModel):
    configuration: Optional[DeploymentConfiguration] = None
    slo_targets: Optional[SLOTargets] = None
    drift_thresholds: Optional[DriftThresholds] = None


class DeploymentStatusUpdate(BaseModel):
    status: DeploymentStatus


class DeploymentRead(BaseModel):
    id: int
    version_id: int
    environment: str
    status: str
    strategy: str
    configuration: dict
    traffic_split: Optional[int] = None
    slo_targets: dict
    drift_thresholds: dict
    deployed_by: str
    deployed_at: datetime
    updated_at: datetime

    model_config = {
        "from_attributes": True
    }


class DeploymentQuery(BaseModel):
    environment: Optional[DeploymentEnvironment] = None
    status: Optional[DeploymentStatus] = None
    version_id: Optional[int] = None
    deployed_by: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, ge=1, le=500)
    offset: Optional[int] = Field(default=None, ge=0)

    @field_validator("end_date")
    @classmethod
    def end_after_start(cls, v, info):
        start = info.data.get("start_date")
        if v is not None and start is not None and v < start:
            raise ValueError("end_date must not be before start_date")
        return v


class DeploymentHealth(BaseModel):
    status: str
    health_score: int
    active_alerts: int
    critical_alerts: int
    last_metrics_timestamp: Optional[datetime] = None
