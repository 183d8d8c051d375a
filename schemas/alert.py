from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from models.enums import AlertType, AlertSeverity


class AlertCreate(BaseModel):
    deployment_id: int
    type: AlertType
    severity: AlertSeverity
    message: str
    threshold: float
    actual_value: float


class AlertRead(BaseModel):
    id: int
    deployment_id: int
    type: str
    severity: str
    message: str
    threshold: float
    actual_value: float
    triggered_at: datetime
    resolved_at: Optional[datetime] = None
    acknowledged: bool

    model_config = {
        "from_attributes": True
    }
