from sqlalchemy import Column, Integer, String, Text, DateTime
from sqlalchemy.orm import relationship
from utils.clock import utcnow
from .base import Base


# 모델 카탈로그(외부 registry)의 버전 레코드. 이 서비스는 조회만 한다.
class ModelVersion(Base):
    __tablename__ = 'model_versions'
    id = Column(Integer, primary_key=True, index=True)
    model_name = Column(String(100), nullable=False, index=True)
    version = Column(String(50), nullable=False)
    artifact_uri = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deployments = relationship('Deployment', back_populates='version')

    def __repr__(self):
        return f"<ModelVersion(id={self.id}, model_name='{self.model_name}', version='{self.version}')>"
