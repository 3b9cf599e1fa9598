import logging
from typing import Any, Callable, Dict, Optional

from stackbox.config import Settings, SslMode
from stackbox.errors import (
    ExternalAPIError,
    ProvisioningCancelledError,
    RollbackPartialFailureError,
    ValidationTimeoutError,
)
from stackbox.models import (
    DeploymentRecord,
    DeploymentStatus,
    DnsRecordRef,
    SecretHandles,
    SslStatus,
    Stage,
    StageError,
    STAGE_ORDER,
    TenantConfig,
)
from stackbox.naming import ResourceNames
from stackbox.polling import RunContext

logger = logging.getLogger(__name__)

BYPASSED = object()


class ProvisioningOrchestrator:
    """Runs the eight provisioning stages for one tenant, in order.

    The record is saved and a progress event emitted on every transition. A
    failing stage stops the run and the rollback manager undoes every stage
    that had succeeded. `provision` always returns the final record.
    """

    def __init__(
        self,
        settings: Settings,
        certificates,
        databases,
        secret_store,
        load_balancers,
        cdn,
        dns,
        containers,
        rollback,
        repository,
        events,
    ):
        self.settings = settings
        self.certificates = certificates
        self.databases = databases
        self.secret_store = secret_store
        self.load_balancers = load_balancers
        self.cdn = cdn
        self.dns = dns
        self.containers = containers
        self.rollback_manager = rollback
        self.repository = repository
        self.events = events

    def provision(self, tenant: TenantConfig, context: Optional[RunContext] = None) -> DeploymentRecord:
        context = context or RunContext(tenant.tenant_id)
        names = ResourceNames(tenant.tenant_id, self.settings.resource_prefix, self.settings.primary_domain)
        record = DeploymentRecord.for_tenant(tenant)
        record.transition(DeploymentStatus.IN_PROGRESS)
        self._save(record, None, "in_progress", f"Provisioning {tenant.tier_key} tenant", strict=False)

        # Outputs that later stages consume but that never go on the record
        run: Dict[str, Any] = {}
        actions: Dict[Stage, Callable[[], Any]] = {
            Stage.CERTIFICATE: lambda: self._certificate(record, context),
            Stage.DATABASE: lambda: self._database(tenant, run, context),
            Stage.SECRETS: lambda: self._secrets(tenant, run),
            Stage.LOAD_BALANCER: lambda: self.load_balancers.create_load_balancer(
                tenant.tenant_id, record.handles.certificate_arn
            ),
            Stage.CDN: lambda: self.cdn.create_distribution(
                tenant.tenant_id, record.handles.load_balancer.dns_name, record.handles.certificate_arn
            ),
            Stage.DNS: lambda: self._dns(names, record),
            Stage.TARGET_REGISTRATION: lambda: self._targets(tenant, record),
            Stage.CONTAINERS: lambda: self.containers.deploy_services(
                tenant,
                run["credentials"],
                record.handles.secrets.database,
                record.handles.secrets.integrations,
                record.handles.load_balancer,
            ),
        }

        for stage in STAGE_ORDER:
            if not self._run_stage(record, stage, actions[stage], context):
                self._roll_back(record)
                return record

        if context.cancelled:
            # A cancel during the last stage is only seen here
            logger.warning("Provisioning for %s was cancelled after its last stage", tenant.tenant_id)
            record.error = StageError(
                stage=STAGE_ORDER[-1].value,
                kind=ProvisioningCancelledError.kind,
                message=f"Provisioning cancelled for tenant {tenant.tenant_id}",
            )
            self._roll_back(record)
            return record

        record.tenant_url = names.tenant_url if record.ssl_status == SslStatus.ISSUED else (
            f"https://{record.handles.cdn.domain_name}"
        )
        record.transition(DeploymentStatus.COMPLETED)
        self._save(record, None, "completed", record.tenant_url, strict=False)
        logger.info("Tenant %s provisioned at %s", tenant.tenant_id, record.tenant_url)
        return record

    def _run_stage(self, record: DeploymentRecord, stage: Stage, action: Callable[[], Any], context: RunContext) -> bool:
        record.start_stage(stage)
        try:
            self._save(record, stage, "in_progress")
            context.check()
            handle = action()
            if handle is BYPASSED:
                record.bypass_stage(stage)
            else:
                record.succeed_stage(stage, handle)
        except Exception as e:
            error = self._stage_error(stage, e)
            logger.error("Stage %s failed for %s: %s", stage.value, record.tenant_id, e)
            record.fail_stage(stage, error)
            self._save(record, stage, "failed", error.message, {"kind": error.kind}, strict=False)
            return False

        try:
            if handle is BYPASSED:
                self._save(record, stage, "bypassed", "Continuing without TLS termination")
            else:
                self._save(record, stage, "succeeded")
        except Exception as e:
            # The stage keeps its handle so rollback removes what it created
            record.error = self._stage_error(stage, e)
            logger.error("Could not record %s for %s, stopping: %s", stage.value, record.tenant_id, e)
            return False
        return True

    @staticmethod
    def _stage_error(stage: Stage, e: Exception) -> StageError:
        if isinstance(e, ExternalAPIError) and e.stage is None:
            e.stage = stage.value
        return StageError(stage=stage.value, kind=getattr(e, "kind", "unexpected_error"), message=str(e))

    def _roll_back(self, record: DeploymentRecord):
        record.transition(DeploymentStatus.FAILED)
        self._save(record, None, "failed", record.error.message if record.error else "", strict=False)

        report = self.rollback_manager.rollback(record)
        if not report.results:
            self._save(record, None, "failed", "Nothing to roll back", strict=False)
            return
        if report.failures:
            aggregate = RollbackPartialFailureError(
                record.error.message, [f"{f.stage}: {f.detail}" for f in report.failures]
            )
            logger.error("Rollback incomplete for %s: %s", record.tenant_id, aggregate)
            self._save(record, None, "rollback_failed", str(aggregate), {"failed": report.stages}, strict=False)
            return
        record.transition(DeploymentStatus.ROLLED_BACK)
        self._save(record, None, "rolled_back", f"Rolled back {', '.join(report.stages)}", strict=False)

    # Stage actions

    def _certificate(self, record: DeploymentRecord, context: RunContext):
        mode = self.settings.ssl_mode
        if mode == SslMode.BYPASS:
            logger.warning("SSL bypass enabled, skipping certificate for %s", record.tenant_id)
            record.ssl_status = SslStatus.BYPASSED
            return BYPASSED
        try:
            result = self.certificates.ensure_certificate(self.settings.primary_domain, context)
        except ValidationTimeoutError as e:
            if mode != SslMode.FALLBACK:
                raise
            logger.warning("Certificate validation timed out (%s), falling back to SSL bypass", e)
            record.ssl_status = SslStatus.BYPASSED
            return BYPASSED
        record.ssl_status = SslStatus.ISSUED
        return result.certificate_arn

    def _database(self, tenant: TenantConfig, run: Dict[str, Any], context: RunContext):
        credentials, instance = self.databases.ensure_database(tenant, context)
        run["credentials"] = credentials
        return instance

    def _secrets(self, tenant: TenantConfig, run: Dict[str, Any]) -> SecretHandles:
        database = self.secret_store.store_credentials(tenant.tenant_id, run["credentials"])
        integrations = None
        if tenant.integrations is not None:
            integrations = self.secret_store.store_integration_credentials(tenant.tenant_id, tenant.integrations)
        return SecretHandles(database=database, integrations=integrations)

    def _dns(self, names: ResourceNames, record: DeploymentRecord) -> DnsRecordRef:
        target = record.handles.cdn.domain_name
        change_id = self.dns.upsert_record(names.subdomain, "CNAME", target, self.settings.dns_ttl)
        return DnsRecordRef(name=names.subdomain, record_type="CNAME", value=target, change_id=change_id)

    def _targets(self, tenant: TenantConfig, record: DeploymentRecord):
        instance_ids = list(tenant.compute_instance_ids) or self.containers.cluster_instance_ids()
        return self.load_balancers.register_targets(record.handles.load_balancer.target_group_arn, instance_ids)

    def _save(
        self,
        record: DeploymentRecord,
        stage: Optional[Stage],
        status: str,
        message: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        strict: bool = True,
    ):
        try:
            self.repository.save(record)
        except Exception as e:
            if strict:
                raise
            logger.error("Could not persist deployment %s for %s: %s", record.deployment_id, record.tenant_id, e)
        self.events.emit(
            record.tenant_id,
            record.deployment_id,
            status,
            stage=stage.value if stage else None,
            message=message,
            metadata=metadata,
        )
