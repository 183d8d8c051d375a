from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class ModelVersionCreate(BaseModel):
    model_name: str
    version: str
    artifact_uri: Optional[str] = None
    description: Optional[str] = None

    model_config = {
        "protected_namespaces": ()
    }


class ModelVersionRead(ModelVersionCreate):
    id: int
    created_at: datetime

    model_config = {
        "from_attributes": True,
        "protected_namespaces": ()
    }
