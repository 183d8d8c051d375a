from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from models.enums import Granularity


class MetricsCreate(BaseModel):
    timestamp: Optional[datetime] = None
    availability: float = Field(ge=0, le=100)
    latency_p95: float = Field(ge=0)
    latency_p99: float = Field(ge=0)
    error_rate: float = Field(ge=0, le=100)
    input_drift: Optional[float] = Field(default=None, ge=0)
    output_drift: Optional[float] = Field(default=None, ge=0)
    performance_drift: Optional[float] = Field(default=None, ge=0)
    request_count: int = Field(default=0, ge=0)


class MetricsRead(BaseModel):
    id: Optional[int] = None  # 집계 결과는 id 없음
    deployment_id: int
    timestamp: datetime
    availability: float
    latency_p95: float
    latency_p99: float
    error_rate: float
    input_drift: Optional[float] = None
    output_drift: Optional[float] = None
    performance_drift: Optional[float] = None
    request_count: int

    model_config = {
        "from_attributes": True
    }


class MetricsQuery(BaseModel):
    start_time: datetime
    end_time: datetime
    granularity: Optional[Granularity] = None
