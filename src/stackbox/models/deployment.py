from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import ulid
from pydantic import BaseModel, Field

from stackbox.errors import InvalidTransitionError, RollbackPartialFailureError
from stackbox.models.resources import (
    ContainerDeployment,
    DatabaseInstance,
    DistributionRef,
    DnsRecordRef,
    LoadBalancerRef,
    SecretHandles,
    TargetRegistration,
)
from stackbox.models.rollback import RollbackReport
from stackbox.models.tenant import AccountTier, Plan, TenantConfig


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class StageStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BYPASSED = "bypassed"
    ROLLED_BACK = "rolled_back"


class SslStatus(str, Enum):
    PENDING = "PENDING"
    ISSUED = "ISSUED"
    BYPASSED = "BYPASSED"


class Stage(str, Enum):
    CERTIFICATE = "certificate"
    DATABASE = "database"
    SECRETS = "secrets"
    LOAD_BALANCER = "load_balancer"
    CDN = "cdn"
    DNS = "dns"
    TARGET_REGISTRATION = "target_registration"
    CONTAINERS = "containers"


STAGE_ORDER: List[Stage] = list(Stage)

ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.IN_PROGRESS},
    DeploymentStatus.IN_PROGRESS: {DeploymentStatus.COMPLETED, DeploymentStatus.FAILED},
    DeploymentStatus.FAILED: {DeploymentStatus.ROLLED_BACK},
    DeploymentStatus.COMPLETED: {DeploymentStatus.ROLLED_BACK},
}

HANDLE_FIELDS = {
    Stage.CERTIFICATE: "certificate_arn",
    Stage.DATABASE: "database",
    Stage.SECRETS: "secrets",
    Stage.LOAD_BALANCER: "load_balancer",
    Stage.CDN: "cdn",
    Stage.DNS: "dns",
    Stage.TARGET_REGISTRATION: "targets",
    Stage.CONTAINERS: "containers",
}


class ResourceHandles(BaseModel):
    certificate_arn: Optional[str] = None
    database: Optional[DatabaseInstance] = None
    secrets: Optional[SecretHandles] = None
    load_balancer: Optional[LoadBalancerRef] = None
    cdn: Optional[DistributionRef] = None
    dns: Optional[DnsRecordRef] = None
    targets: Optional[TargetRegistration] = None
    containers: Optional[ContainerDeployment] = None

    def get(self, stage: Stage) -> Any:
        return getattr(self, HANDLE_FIELDS[stage])

    def set(self, stage: Stage, value: Any):
        setattr(self, HANDLE_FIELDS[stage], value)

    def clear(self, stage: Stage):
        setattr(self, HANDLE_FIELDS[stage], None)


class StageState(BaseModel):
    status: StageStatus = StageStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None


class StageError(BaseModel):
    stage: Optional[str] = None
    kind: str
    message: str


class DeploymentRecord(BaseModel):
    deployment_id: str = Field(default_factory=lambda: str(ulid.new()))
    tenant_id: str
    tier: AccountTier
    plan: Plan
    status: DeploymentStatus = DeploymentStatus.PENDING
    stages: Dict[Stage, StageState] = Field(
        default_factory=lambda: {stage: StageState() for stage in STAGE_ORDER}
    )
    handles: ResourceHandles = Field(default_factory=ResourceHandles)
    ssl_status: SslStatus = SslStatus.PENDING
    tenant_url: Optional[str] = None
    error: Optional[StageError] = None
    rollback: Optional[RollbackReport] = None
    created_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @classmethod
    def for_tenant(cls, tenant: TenantConfig) -> "DeploymentRecord":
        return cls(tenant_id=tenant.tenant_id, tier=tenant.tier, plan=tenant.plan)

    def transition(self, new_status: DeploymentStatus):
        if new_status == self.status:
            return
        if new_status not in ALLOWED_TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(
                f"Cannot transition deployment from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        if new_status != DeploymentStatus.IN_PROGRESS:
            self.completed_at = _now()

    def start_stage(self, stage: Stage):
        state = self.stages[stage]
        state.status = StageStatus.IN_PROGRESS
        state.started_at = _now()
        state.finished_at = None
        state.error = None

    def succeed_stage(self, stage: Stage, handle: Any):
        if handle is None or handle == "":
            raise ValueError(f"Stage {stage.value} succeeded without a resource handle")
        self.handles.set(stage, handle)
        state = self.stages[stage]
        state.status = StageStatus.SUCCEEDED
        state.finished_at = _now()

    def fail_stage(self, stage: Stage, error: StageError):
        self.handles.clear(stage)
        state = self.stages[stage]
        state.status = StageStatus.FAILED
        state.finished_at = _now()
        state.error = error.message
        self.error = error

    def bypass_stage(self, stage: Stage):
        self.handles.clear(stage)
        state = self.stages[stage]
        state.status = StageStatus.BYPASSED
        state.finished_at = _now()

    def mark_rolled_back(self, stage: Stage):
        self.handles.clear(stage)
        self.stages[stage].status = StageStatus.ROLLED_BACK

    def stage_status(self, stage: Stage) -> StageStatus:
        return self.stages[stage].status

    def succeeded_stages(self) -> List[Stage]:
        return [s for s in STAGE_ORDER if self.stages[s].status == StageStatus.SUCCEEDED]

    def stage_statuses(self) -> Dict[str, str]:
        return {stage.value: self.stages[stage].status.value for stage in STAGE_ORDER}

    def handles_consistent(self) -> bool:
        return all(
            (self.handles.get(stage) is not None) == (self.stages[stage].status == StageStatus.SUCCEEDED)
            for stage in STAGE_ORDER
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            DeploymentStatus.COMPLETED,
            DeploymentStatus.FAILED,
            DeploymentStatus.ROLLED_BACK,
        )


class DeploymentResult(BaseModel):
    """What the signup/billing flow and the CLI receive for one run."""

    success: bool
    tenant_id: str
    deployment_id: str
    status: DeploymentStatus
    tenant_url: Optional[str] = None
    ssl_status: SslStatus
    stage_statuses: Dict[str, str]
    resources: ResourceHandles
    error: Optional[StageError] = None
    rollback: Optional[RollbackReport] = None
    rollback_error: Optional[str] = None

    @classmethod
    def from_record(cls, record: DeploymentRecord) -> "DeploymentResult":
        rollback_error = None
        if record.rollback is not None and record.rollback.failures:
            original = record.error.message if record.error else "deprovision requested"
            rollback_error = str(RollbackPartialFailureError(
                original, [f"{f.stage}: {f.detail}" for f in record.rollback.failures]
            ))
        return cls(
            rollback_error=rollback_error,
            success=record.status == DeploymentStatus.COMPLETED,
            tenant_id=record.tenant_id,
            deployment_id=record.deployment_id,
            status=record.status,
            tenant_url=record.tenant_url,
            ssl_status=record.ssl_status,
            stage_statuses=record.stage_statuses(),
            resources=record.handles,
            error=record.error,
            rollback=record.rollback,
        )
