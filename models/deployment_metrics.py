from sqlalchemy import Column, Integer, Float, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from utils.clock import utcnow
from .base import Base


# append-only 시계열 샘플
class DeploymentMetrics(Base):
    __tablename__ = 'deployment_metrics'
    id = Column(Integer, primary_key=True, index=True)
    deployment_id = Column(Integer, ForeignKey('deployments.id', ondelete='CASCADE'), nullable=False, index=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    availability = Column(Float, nullable=False)  # %
    latency_p95 = Column(Float, nullable=False)  # ms
    latency_p99 = Column(Float, nullable=False)  # ms
    error_rate = Column(Float, nullable=False)  # %
    input_drift = Column(Float, nullable=True)
    output_drift = Column(Float, nullable=True)
    performance_drift = Column(Float, nullable=True)
    request_count = Column(Integer, nullable=False, default=0)
    deployment = relationship('Deployment', back_populates='metrics')

    def __repr__(self):
        return f"<DeploymentMetrics(id={self.id}, deployment_id={self.deployment_id}, timestamp={self.timestamp})>"
