from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class RollbackCreate(BaseModel):
    target_version_id: int
    reason: str = Field(min_length=1)


class RollbackRead(BaseModel):
    id: int
    deployment_id: int
    target_version_id: int
    reason: str
    status: str
    initiated_by: str
    initiated_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    model_config = {
        "from_attributes": True
    }
