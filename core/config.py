import os
from typing import Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()


class RollbackConfig(BaseModel):
    # max_rollback_time_ms, rollback_timeout_ms는 호출자용 예산 값 (루프 안에서 강제하지 않음)
    max_rollback_time_ms: int = Field(default=600_000, ge=0)
    health_check_retries: int = Field(default=5, ge=1)
    health_check_interval_ms: int = Field(default=30_000, ge=0)
    rollback_timeout_ms: int = Field(default=300_000, ge=0)
    substrate_retries: int = Field(default=2, ge=0)
    substrate_retry_delay_ms: int = Field(default=1_000, ge=0)


class MonitoringConfig(BaseModel):
    slo_check_interval_ms: int = Field(default=60_000, gt=0)
    drift_check_interval_ms: int = Field(default=300_000, gt=0)
    slo_window_ms: int = Field(default=300_000, gt=0)
    drift_window_ms: int = Field(default=900_000, gt=0)
    alert_cooldown_ms: int = Field(default=300_000, ge=0)
    auto_rollback_enabled: bool = True
    auto_rollback_threshold: int = Field(default=3, ge=1)


class RolloutConfig(BaseModel):
    canary_traffic_increment: int = Field(default=10, ge=1, le=100)
    canary_promotion_delay_ms: int = Field(default=300_000, ge=0)
    blue_green_switch_delay_ms: int = Field(default=60_000, ge=0)
    rolling_update_batch_size: int = Field(default=1, ge=1)
    rolling_batch_delay_ms: int = Field(default=10_000, ge=0)
    health_check_timeout_ms: int = Field(default=300_000, ge=0)
    health_check_poll_ms: int = Field(default=10_000, ge=0)
    auto_rollback_on_failure: bool = True


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./deployments.db"
    substrate: str = "simulated"  # simulated, docker
    health_probe: str = "substrate"  # substrate (workload 자체 probe), http
    health_url_template: str = "http://deployment-{deployment_id}:8080"
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    rollout: RolloutConfig = Field(default_factory=RolloutConfig)


def _section_from_env(model, prefix: str):
    # 예: ROLLBACK_HEALTH_CHECK_RETRIES=3, MONITOR_AUTO_ROLLBACK_ENABLED=false
    values = {}
    for name in model.model_fields:
        raw = os.getenv(f"{prefix}_{name.upper()}")
        if raw is not None:
            values[name] = raw
    return model.model_validate(values)


def load_settings(database_url: Optional[str] = None) -> Settings:
    return Settings(
        database_url=database_url or os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./deployments.db"),
        substrate=os.getenv("SUBSTRATE", "simulated"),
        health_probe=os.getenv("HEALTH_PROBE", "substrate"),
        health_url_template=os.getenv("HEALTH_URL_TEMPLATE", "http://deployment-{deployment_id}:8080"),
        rollback=_section_from_env(RollbackConfig, "ROLLBACK"),
        monitoring=_section_from_env(MonitoringConfig, "MONITOR"),
        rollout=_section_from_env(RolloutConfig, "ROLLOUT"),
    )
