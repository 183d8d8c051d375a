from sqlalchemy import Column, Integer, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from utils.clock import utcnow
from .base import Base


class TrafficSplit(Base):
    __tablename__ = 'traffic_splits'
    __table_args__ = (
        CheckConstraint('percentage >= 0 AND percentage <= 100', name='ck_traffic_splits_percentage'),
    )
    id = Column(Integer, primary_key=True, index=True)
    deployment_id = Column(Integer, ForeignKey('deployments.id', ondelete='CASCADE'), nullable=False, index=True)
    percentage = Column(Integer, nullable=False)
    started_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)
    deployment = relationship('Deployment', back_populates='traffic_splits')

    def __repr__(self):
        return f"<TrafficSplit(id={self.id}, deployment_id={self.deployment_id}, percentage={self.percentage})>"
