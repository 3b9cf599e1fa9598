import logging
from concurrent.futures import Future
from typing import Any, Dict, List, Union

from pydantic import ValidationError

from stackbox.errors import ConfigValidationError, DeploymentNotFoundError, InvalidTransitionError
from stackbox.models import (
    AccountTier,
    DatabaseUpgrade,
    DeploymentRecord,
    DeploymentResult,
    DeploymentStatus,
    Plan,
    ProgressEvent,
    RollbackReport,
    TenantConfig,
)
from stackbox.polling import RunContext
from stackbox.worker.executor import ProvisioningPool

logger = logging.getLogger(__name__)


def parse_tenant(data: Union[TenantConfig, Dict[str, Any]]) -> TenantConfig:
    if isinstance(data, TenantConfig):
        return data
    try:
        return TenantConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid tenant configuration: {e}") from e


class ProvisioningService:
    """The interface the signup and billing flows talk to."""

    def __init__(self, orchestrator, repository, events, databases, rollback, max_workers: int = 4):
        self.orchestrator = orchestrator
        self.repository = repository
        self.events = events
        self.databases = databases
        self.rollback_manager = rollback
        self.pool = ProvisioningPool(self._run, max_workers=max_workers)

    def _run(self, tenant: TenantConfig, context: RunContext) -> DeploymentRecord:
        return self.orchestrator.provision(tenant, context)

    def submit(self, tenant: Union[TenantConfig, Dict[str, Any]]) -> Future:
        """Start provisioning without waiting. The future resolves to the final record."""
        return self.pool.submit(parse_tenant(tenant))

    def provision(self, tenant: Union[TenantConfig, Dict[str, Any]]) -> DeploymentResult:
        record = self.submit(tenant).result()
        return DeploymentResult.from_record(record)

    def get_status(self, tenant_id: str) -> DeploymentRecord:
        record = self.repository.latest(tenant_id)
        if record is None:
            raise DeploymentNotFoundError(tenant_id)
        return record

    def deprovision(self, tenant_id: str) -> RollbackReport:
        running = self.pool.cancel(tenant_id)
        if running is not None:
            # The run notices the cancel, fails its current stage and rolls back
            record = running.result()
            if record.status != DeploymentStatus.COMPLETED:
                return record.rollback or RollbackReport(tenant_id=tenant_id, deployment_id=record.deployment_id)
            logger.info("Run for %s completed before seeing the cancel, removing it", tenant_id)
        else:
            record = self.get_status(tenant_id)

        if record.status == DeploymentStatus.ROLLED_BACK:
            logger.info("Tenant %s is already rolled back", tenant_id)
            return record.rollback or RollbackReport(tenant_id=tenant_id, deployment_id=record.deployment_id)
        if not record.is_terminal:
            raise InvalidTransitionError(f"Deployment for {tenant_id} is {record.status.value} in another process")

        self.events.emit(tenant_id, record.deployment_id, "deprovisioning")
        report = self.rollback_manager.rollback(record)
        if not report.failures:
            record.transition(DeploymentStatus.ROLLED_BACK)
        self.repository.save(record)
        self.events.emit(
            tenant_id,
            record.deployment_id,
            "rolled_back" if not report.failures else "rollback_failed",
            message=", ".join(f"{r.stage}={r.status.value}" for r in report.results),
        )
        return report

    def upgrade_tier(self, tenant_id: str, plan: Union[Plan, str]) -> DatabaseUpgrade:
        plan = Plan(plan)
        record = self.get_status(tenant_id)
        if record.status != DeploymentStatus.COMPLETED:
            raise InvalidTransitionError(
                f"Cannot upgrade tenant {tenant_id} while its deployment is {record.status.value}"
            )
        upgrade = self.databases.upgrade_database(tenant_id, plan)
        record.tier = AccountTier.PAID
        record.plan = plan
        self.repository.save(record)
        self.events.emit(
            tenant_id,
            record.deployment_id,
            "upgrade_scheduled",
            stage="database",
            message=f"Resize to {upgrade.instance_class} after snapshot {upgrade.snapshot_id}",
        )
        return upgrade

    def get_events(self, tenant_id: str, limit: int = 50) -> List[ProgressEvent]:
        return self.events.get_events(tenant_id, limit)

    def shutdown(self, wait: bool = True):
        self.pool.shutdown(wait=wait)
