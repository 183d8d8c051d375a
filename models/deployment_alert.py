from sqlalchemy import Column, Integer, String, Text, Float, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from utils.clock import utcnow
from .base import Base


class DeploymentAlert(Base):
    __tablename__ = 'deployment_alerts'
    id = Column(Integer, primary_key=True, index=True)
    deployment_id = Column(Integer, ForeignKey('deployments.id', ondelete='CASCADE'), nullable=False, index=True)
    type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False, index=True)
    message = Column(Text, nullable=False)
    threshold = Column(Float, nullable=False)
    actual_value = Column(Float, nullable=False)
    triggered_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    resolved_at = Column(DateTime, nullable=True)
    acknowledged = Column(Boolean, nullable=False, default=False, index=True)
    deployment = relationship('Deployment', back_populates='alerts')

    def __repr__(self):
        return f"<DeploymentAlert(id={self.id}, deployment_id={self.deployment_id}, type='{self.type}', severity='{self.severity}')>"
