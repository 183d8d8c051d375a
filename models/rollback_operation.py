from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from utils.clock import utcnow
from .base import Base
from .enums import RollbackStatus


class RollbackOperation(Base):
    __tablename__ = 'rollback_operations'
    id = Column(Integer, primary_key=True, index=True)
    deployment_id = Column(Integer, ForeignKey('deployments.id', ondelete='CASCADE'), nullable=False, index=True)
    target_version_id = Column(Integer, ForeignKey('model_versions.id'), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=RollbackStatus.PENDING.value, index=True)
    initiated_by = Column(String(64), nullable=False)
    initiated_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    deployment = relationship('Deployment', back_populates='rollbacks')

    def __repr__(self):
        return f"<RollbackOperation(id={self.id}, deployment_id={self.deployment_id}, status='{self.status}')>"
