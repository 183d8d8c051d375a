from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class TrafficSplitCreate(BaseModel):
    percentage: int = Field(ge=0, le=100)


class TrafficSplitRead(BaseModel):
    id: int
    deployment_id: int
    percentage: int
    started_at: datetime
    completed_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True
    }
