import enum


class DeploymentStatus(str, enum.Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    ACTIVE = "active"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    TERMINATED = "terminated"


class DeploymentEnvironment(str, enum.Enum):
    STAGING = "staging"
    PRODUCTION = "production"
    CANARY = "canary"


class DeploymentStrategy(str, enum.Enum):
    ROLLING = "rolling"
    CANARY = "canary"
    BLUE_GREEN = "blue_green"


class RollbackStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class AlertType(str, enum.Enum):
    SLO_BREACH = "slo_breach"
    DRIFT_DETECTED = "drift_detected"
    HIGH_ERROR_RATE = "high_error_rate"
    HIGH_LATENCY = "high_latency"
    LOW_AVAILABILITY = "low_availability"


class AlertSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Granularity(str, enum.Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


TERMINAL_DEPLOYMENT_STATUSES = {
    DeploymentStatus.FAILED,
    DeploymentStatus.ROLLED_BACK,
    DeploymentStatus.TERMINATED,
}

TERMINAL_ROLLBACK_STATUSES = {RollbackStatus.COMPLETED, RollbackStatus.FAILED}

# 이 모듈 밖에서 status를 바꾸는 쪽(orchestrator, monitor)이 지켜야 하는 전이표
# FAILED -> ROLLING_BACK: 실패한 deployment도 롤백 대상
LEGAL_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.DEPLOYING, DeploymentStatus.FAILED},
    DeploymentStatus.DEPLOYING: {DeploymentStatus.ACTIVE, DeploymentStatus.FAILED},
    DeploymentStatus.ACTIVE: {
        DeploymentStatus.ROLLING_BACK,
        DeploymentStatus.FAILED,
        DeploymentStatus.TERMINATED,
    },
    DeploymentStatus.ROLLING_BACK: {DeploymentStatus.ROLLED_BACK, DeploymentStatus.FAILED},
    DeploymentStatus.FAILED: {DeploymentStatus.ROLLING_BACK},
    DeploymentStatus.ROLLED_BACK: set(),
    DeploymentStatus.TERMINATED: set(),
}


def can_transition(current, new) -> bool:
    return DeploymentStatus(new) in LEGAL_TRANSITIONS[DeploymentStatus(current)]
