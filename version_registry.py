from typing import List, Optional
from sqlalchemy.future import select
from sqlalchemy.exc import SQLAlchemyError
from models.version import ModelVersion
from schemas.version import ModelVersionCreate
from utils.exceptions import InfrastructureError


class VersionRegistry:
    """모델 카탈로그 조회 경계. 버전 메타데이터의 소유자는 외부 registry다."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def get_version(self, version_id: int) -> Optional[ModelVersion]:
        try:
            async with self.session_factory() as db:
                return await db.get(ModelVersion, version_id)
        except SQLAlchemyError as e:
            raise InfrastructureError("Failed to load model version", dev_message=str(e))

    async def version_exists(self, version_id: int) -> bool:
        return await self.get_version(version_id) is not None

    async def list_versions(self, model_name: Optional[str] = None) -> List[ModelVersion]:
        query = select(ModelVersion)
        if model_name:
            query = query.where(ModelVersion.model_name == model_name)
        query = query.order_by(ModelVersion.created_at.desc(), ModelVersion.id.desc())
        try:
            async with self.session_factory() as db:
                result = await db.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise InfrastructureError("Failed to list model versions", dev_message=str(e))

    # 시드 스크립트/테스트용. 운영에서는 외부 registry가 버전을 등록한다.
    async def register_version(self, request: ModelVersionCreate) -> ModelVersion:
        version = ModelVersion(**request.model_dump())
        try:
            async with self.session_factory() as db:
                db.add(version)
                await db.commit()
                await db.refresh(version)
                return version
        except SQLAlchemyError as e:
            raise InfrastructureError("Failed to register model version", dev_message=str(e))
