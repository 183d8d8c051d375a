import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import asyncio
import tempfile
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from core.db import Base
# 관계 모델 명시적 import (SQLAlchemy registry 등록)
import models  # noqa: F401
from models import DeploymentStatus
from deployment_manager import DeploymentManager
from version_registry import VersionRegistry
from schemas.version import ModelVersionCreate
from substrates.base import WorkloadSubstrate, TrafficRouter, HealthProbe


@pytest.fixture
def temp_db_url():
    db_fd, db_path = tempfile.mkstemp(suffix=".sqlite3")
    url = f"sqlite+aiosqlite:///{db_path}"
    yield url
    os.close(db_fd)
    os.remove(db_path)


@pytest_asyncio.fixture
async def session_factory(temp_db_url):
    engine = create_async_engine(temp_db_url, future=True, connect_args={"check_same_thread": False})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def manager(session_factory):
    return DeploymentManager(session_factory)


@pytest.fixture
def registry(session_factory):
    return VersionRegistry(session_factory)


@pytest_asyncio.fixture
async def versions(registry):
    return [
        await registry.register_version(ModelVersionCreate(model_name="fraud-detector", version=f"1.{i}.0",
                                                           artifact_uri=f"s3://models/fraud-detector/1.{i}.0"))
        for i in range(3)
    ]


@pytest.fixture
def deployment_payload():
    def build(version_id, environment="production", strategy="canary", error_rate=0.1, replicas=2):
        return {
            "version_id": version_id,
            "environment": environment,
            "strategy": strategy,
            "configuration": {
                "replicas": replicas,
                "resources": {"cpu": "500m", "memory": "1Gi"},
                "health_check": {"path": "/health", "port": 8080},
            },
            "slo_targets": {"availability": 99.9, "latency_p95": 200, "latency_p99": 500, "error_rate": error_rate},
            "drift_thresholds": {"input_drift": 0.2, "output_drift": 0.2, "performance_drift": 0.1},
        }
    return build


@pytest.fixture
def make_deployment(manager, deployment_payload):
    async def make(version_id, status=DeploymentStatus.ACTIVE, **kwargs):
        deployment = await manager.create_deployment(deployment_payload(version_id, **kwargs), "tester")
        if status != DeploymentStatus.PENDING:
            deployment = await manager.update_deployment_status(deployment.id, status)
        return deployment
    return make


class StubSubstrate(WorkloadSubstrate, TrafficRouter, HealthProbe):
    """테스트용 substrate. 결과를 속성으로 지정하고 호출을 기록한다."""

    def __init__(self, deploy_ok=True, shift_ok=True, healthy=True, version_matches=True):
        self.deploy_ok = deploy_ok
        self.shift_ok = shift_ok
        self.healthy = healthy
        self.version_matches = version_matches
        self.calls = []
        self.deploy_configs = []
        # set 되기 전까지 deploy_version이 멈춰 있음 (취소 테스트용)
        self.deploy_gate = asyncio.Event()
        self.deploy_gate.set()

    @property
    def substrate_type(self) -> str:
        return "stub"

    async def deploy_version(self, deployment_id, target_version_id, config):
        self.calls.append(("deploy_version", deployment_id, target_version_id))
        self.deploy_configs.append(config)
        await self.deploy_gate.wait()
        return self.deploy_ok

    async def shift_traffic(self, deployment_id, percentage):
        self.calls.append(("shift_traffic", deployment_id, percentage))
        return self.shift_ok

    async def check_health(self, deployment_id):
        self.calls.append(("check_health", deployment_id))
        return self.healthy

    async def check_deployed_version(self, deployment_id, expected_version_id):
        self.calls.append(("check_deployed_version", deployment_id, expected_version_id))
        return self.version_matches

    def count(self, name):
        return len([c for c in self.calls if c[0] == name])


@pytest.fixture
def substrate():
    return StubSubstrate()
