import logging
from typing import Optional

import boto3

from stackbox.config import Settings
from stackbox.orchestrator import ProvisioningOrchestrator, ProvisioningService, RollbackManager
from stackbox.provisioners import (
    CdnProvisioner,
    CertificateProvisioner,
    ContainerWorkloadDeployer,
    DatabaseProvisioner,
    DnsRecordManager,
    LoadBalancerProvisioner,
    NetworkResolver,
)
from stackbox.secrets import SecretStore
from stackbox.services import (
    DeploymentRepository,
    DynamoDeploymentRepository,
    InMemoryDeploymentRepository,
    ProgressEventLog,
)

logger = logging.getLogger(__name__)


def build_service(
    settings: Optional[Settings] = None,
    session: Optional[boto3.session.Session] = None,
    repository: Optional[DeploymentRepository] = None,
    memory_state: bool = False,
) -> ProvisioningService:
    """Wire every provisioner from one session. Called once per process."""
    settings = settings or Settings.from_env()
    session = session or boto3.session.Session(region_name=settings.region)
    prefix, domain = settings.resource_prefix, settings.primary_domain
    timing = {"poll_interval": settings.poll_interval_seconds, "log_every": settings.progress_log_seconds}

    network = NetworkResolver(session.client("ec2"), prefix)
    dns = DnsRecordManager(session.client("route53"), ttl=settings.dns_ttl)
    secret_store = SecretStore(
        session.client("secretsmanager"), prefix, domain, settings.secret_recovery_window_days
    )
    certificates = CertificateProvisioner(
        session.client("acm", region_name=settings.certificate_region),
        dns,
        timeout=settings.certificate_timeout_seconds,
        **timing,
    )
    databases = DatabaseProvisioner(
        session.client("rds"),
        network,
        secret_store,
        prefix,
        domain,
        engine=settings.db_engine,
        engine_version=settings.db_engine_version,
        timeout=settings.database_timeout_seconds,
        **timing,
    )
    load_balancers = LoadBalancerProvisioner(session.client("elbv2"), network, prefix, domain)
    cdn = CdnProvisioner(session.client("cloudfront"), prefix, domain)
    containers = ContainerWorkloadDeployer(
        session.client("ecs"), settings.ecs_cluster, prefix, domain, routes=load_balancers
    )
    rollback = RollbackManager(databases, secret_store, load_balancers, cdn, dns, containers, prefix, domain)

    if repository is None:
        if memory_state:
            repository = InMemoryDeploymentRepository()
        else:
            repository = DynamoDeploymentRepository(session.resource("dynamodb"), settings.deployments_table)
    if memory_state:
        events = ProgressEventLog(retention_days=settings.event_retention_days)
    else:
        events = ProgressEventLog(session.resource("dynamodb"), settings.events_table, settings.event_retention_days)

    orchestrator = ProvisioningOrchestrator(
        settings,
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
    )
    logger.debug("Provisioning service wired for %s in %s", domain, settings.region)
    return ProvisioningService(orchestrator, repository, events, databases, rollback, settings.max_workers)
