from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class CompensationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SCHEDULED = "scheduled"
    SKIPPED = "skipped"


class CompensationResult(BaseModel):
    stage: str
    resource: str
    status: CompensationStatus
    detail: Optional[str] = None


class RollbackReport(BaseModel):
    tenant_id: str
    deployment_id: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    results: List[CompensationResult] = Field(default_factory=list)

    @property
    def failures(self) -> List[CompensationResult]:
        return [r for r in self.results if r.status == CompensationStatus.FAILED]

    @property
    def succeeded(self) -> bool:
        return not self.failures

    @property
    def stages(self) -> List[str]:
        return [r.stage for r in self.results]
