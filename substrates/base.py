from abc import ABC, abstractmethod
from typing import Any, Dict


class WorkloadSubstrate(ABC):
    @abstractmethod
    async def deploy_version(self, deployment_id: int, target_version_id: int, config: Dict[str, Any]) -> bool:
        """target 버전의 replica를 deployment의 resource/health-check 설정으로 띄운다"""
        pass

    @property
    @abstractmethod
    def substrate_type(self) -> str:
        """substrate 타입(simulated, docker) 반환"""
        pass


class TrafficRouter(ABC):
    @abstractmethod
    async def shift_traffic(self, deployment_id: int, percentage: int) -> bool:
        """deployment로 가는 live traffic 비중을 percentage(%)로 조정"""
        pass

    @property
    @abstractmethod
    def substrate_type(self) -> str:
        pass


class HealthProbe(ABC):
    @abstractmethod
    async def check_health(self, deployment_id: int) -> bool:
        """deployment가 healthy 인지 확인"""
        pass

    @abstractmethod
    async def check_deployed_version(self, deployment_id: int, expected_version_id: int) -> bool:
        """실제로 떠 있는 버전이 expected_version_id 인지 확인"""
        pass

    @property
    @abstractmethod
    def substrate_type(self) -> str:
        pass
