import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from stackbox.models import (
    CompensationResult,
    CompensationStatus,
    DeploymentRecord,
    RollbackReport,
    Stage,
    STAGE_ORDER,
)
from stackbox.naming import ResourceNames

logger = logging.getLogger(__name__)

Compensation = Callable[[DeploymentRecord, object], Tuple[CompensationStatus, str, Optional[str]]]


class RollbackManager:
    """Compensating deletes for every stage a record says succeeded.

    Stages are undone in reverse pipeline order. A failing compensation is
    recorded and the walk carries on with the remaining stages.
    """

    def __init__(
        self,
        databases,
        secret_store,
        load_balancers,
        cdn,
        dns,
        containers,
        prefix: str = "stackbox",
        domain: str = "stackbox.io",
    ):
        self.databases = databases
        self.secret_store = secret_store
        self.load_balancers = load_balancers
        self.cdn = cdn
        self.dns = dns
        self.containers = containers
        self.prefix = prefix
        self.domain = domain
        self._compensations: Dict[Stage, Compensation] = {
            Stage.CONTAINERS: self._remove_containers,
            Stage.TARGET_REGISTRATION: self._deregister_targets,
            Stage.DNS: self._remove_dns_record,
            Stage.CDN: self._delete_distribution,
            Stage.LOAD_BALANCER: self._delete_load_balancer,
            Stage.SECRETS: self._delete_secrets,
            Stage.DATABASE: self._delete_database,
            Stage.CERTIFICATE: self._keep_certificate,
        }

    def rollback(self, record: DeploymentRecord) -> RollbackReport:
        report = RollbackReport(tenant_id=record.tenant_id, deployment_id=record.deployment_id)
        succeeded = set(record.succeeded_stages())
        for stage in reversed(STAGE_ORDER):
            if stage not in succeeded:
                continue
            result = self._compensate(record, stage)
            report.results.append(result)
            if result.status != CompensationStatus.FAILED:
                record.mark_rolled_back(stage)

        report.finished_at = datetime.now(timezone.utc)
        record.rollback = report
        if report.failures:
            logger.error(
                "Rollback for %s left %d resource(s) behind: %s",
                record.tenant_id,
                len(report.failures),
                ", ".join(f.resource for f in report.failures),
            )
        else:
            logger.info("Rollback for %s finished (%d stage(s))", record.tenant_id, len(report.results))
        return report

    def _compensate(self, record: DeploymentRecord, stage: Stage) -> CompensationResult:
        handle = record.handles.get(stage)
        logger.info("Rolling back %s for %s", stage.value, record.tenant_id)
        try:
            status, resource, detail = self._compensations[stage](record, handle)
        except Exception as e:
            logger.error("Compensation for %s failed: %s", stage.value, e)
            return CompensationResult(
                stage=stage.value,
                resource=self._describe(handle),
                status=CompensationStatus.FAILED,
                detail=str(e),
            )
        return CompensationResult(stage=stage.value, resource=resource, status=status, detail=detail)

    @staticmethod
    def _describe(handle) -> str:
        if isinstance(handle, str):
            return handle
        if handle is None:
            return ""
        for attr in ("identifier", "load_balancer_arn", "distribution_id", "name", "target_group_arn", "cluster"):
            if hasattr(handle, attr):
                return str(getattr(handle, attr))
        if hasattr(handle, "database"):
            return handle.database.name
        return repr(handle)

    def _remove_containers(self, record, deployment):
        removed = self.containers.remove_services(deployment)
        return CompensationStatus.SUCCEEDED, deployment.cluster, f"removed {len(removed)} service(s)"

    def _deregister_targets(self, record, registration):
        count = self.load_balancers.deregister_targets(registration)
        return CompensationStatus.SUCCEEDED, registration.target_group_arn, f"deregistered {count} target(s)"

    def _remove_dns_record(self, record, dns_record):
        change_id = self.dns.remove_record(dns_record.name, dns_record.record_type)
        detail = change_id or "record already absent"
        return CompensationStatus.SUCCEEDED, dns_record.name, detail

    def _delete_distribution(self, record, distribution):
        outcome = self.cdn.disable_and_delete(distribution.distribution_id)
        if outcome == "scheduled":
            return CompensationStatus.SCHEDULED, distribution.distribution_id, "disabled, delete after propagation"
        return CompensationStatus.SUCCEEDED, distribution.distribution_id, outcome

    def _delete_load_balancer(self, record, load_balancer):
        self.load_balancers.delete_load_balancer(load_balancer)
        return CompensationStatus.SUCCEEDED, load_balancer.load_balancer_arn, None

    def _delete_secrets(self, record, secrets):
        refs = [secrets.database] + ([secrets.integrations] if secrets.integrations else [])
        for ref in refs:
            self.secret_store.delete_secret(ref.name)
        window = self.secret_store.recovery_window_days
        return CompensationStatus.SCHEDULED, secrets.database.name, f"recovery window {window} days"

    def _delete_database(self, record, instance):
        names = ResourceNames(record.tenant_id, self.prefix, self.domain)
        snapshot_id = names.db_snapshot("final")
        deleted = self.databases.delete_database(instance.identifier, snapshot_id)
        detail = f"final snapshot {snapshot_id}" if deleted else "instance already absent"
        return CompensationStatus.SUCCEEDED, instance.identifier, detail

    def _keep_certificate(self, record, certificate_arn):
        # The wildcard certificate is shared by every tenant
        return CompensationStatus.SKIPPED, certificate_arn, "shared certificate retained"
