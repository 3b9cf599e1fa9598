from datetime import datetime, timezone
from typing import Any, Dict, Optional

import ulid
from pydantic import BaseModel, Field


class ProgressEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(ulid.new()))
    tenant_id: str
    deployment_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    stage: Optional[str] = Field(None, description="e.g., certificate, database; None for run-level events")
    status: str = Field(..., description="e.g., in_progress, succeeded, rolled_back")
    message: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True
