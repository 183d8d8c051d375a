# 관계 모델 명시적 import (SQLAlchemy registry 등록)
from .base import Base
from .enums import (
    DeploymentStatus,
    DeploymentEnvironment,
    DeploymentStrategy,
    RollbackStatus,
    AlertType,
    AlertSeverity,
    Granularity,
)
from .version import ModelVersion
from .deployment import Deployment
from .traffic_split import TrafficSplit
from .rollback_operation import RollbackOperation
from .deployment_metrics import DeploymentMetrics
from .deployment_alert import DeploymentAlert
