from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
from utils.clock import utcnow
from .base import Base
from .enums import DeploymentStatus


class Deployment(Base):
    __tablename__ = 'deployments'
    id = Column(Integer, primary_key=True, index=True)
    version_id = Column(Integer, ForeignKey('model_versions.id', ondelete='CASCADE'), nullable=False, index=True)
    environment = Column(String(20), nullable=False, index=True)  # staging, production, canary
    status = Column(String(20), nullable=False, default=DeploymentStatus.PENDING.value, index=True)
    strategy = Column(String(20), nullable=False)  # rolling, canary, blue_green
    configuration = Column(JSON, nullable=False)
    slo_targets = Column(JSON, nullable=False)
    drift_thresholds = Column(JSON, nullable=False)
    deployed_by = Column(String(64), nullable=False)
    deployed_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    # 관계
    version = relationship('ModelVersion', back_populates='deployments')
    traffic_splits = relationship('TrafficSplit', back_populates='deployment', cascade='all, delete-orphan', passive_deletes=True)
    rollbacks = relationship('RollbackOperation', back_populates='deployment', cascade='all, delete-orphan', passive_deletes=True)
    metrics = relationship('DeploymentMetrics', back_populates='deployment', cascade='all, delete-orphan', passive_deletes=True)
    alerts = relationship('DeploymentAlert', back_populates='deployment', cascade='all, delete-orphan', passive_deletes=True)

    def __repr__(self):
        return f"<Deployment(id={self.id}, version_id={self.version_id}, environment='{self.environment}', status='{self.status}')>"
