from .tenant import TenantConfig, AccountTier, Plan, FeatureFlags, IntegrationCredentials
from .credentials import CredentialBundle
from .certificate import ValidationRecord, CertificateResult
from .resources import (
    DatabaseInstance,
    DatabaseUpgrade,
    SecretRef,
    SecretHandles,
    LoadBalancerRef,
    DistributionRef,
    DnsRecordRef,
    TargetRegistration,
    ServiceRoute,
    ContainerDeployment,
)
from .rollback import RollbackReport, CompensationResult, CompensationStatus
from .deployment import (
    DeploymentRecord,
    DeploymentResult,
    DeploymentStatus,
    ResourceHandles,
    SslStatus,
    Stage,
    StageError,
    StageState,
    StageStatus,
    STAGE_ORDER,
)
from .event import ProgressEvent

__all__ = [
    "TenantConfig", "AccountTier", "Plan", "FeatureFlags", "IntegrationCredentials",
    "CredentialBundle", "ValidationRecord", "CertificateResult",
    "DatabaseInstance", "DatabaseUpgrade", "SecretRef", "SecretHandles", "LoadBalancerRef",
    "DistributionRef", "DnsRecordRef", "TargetRegistration", "ServiceRoute", "ContainerDeployment",
    "RollbackReport", "CompensationResult", "CompensationStatus",
    "DeploymentRecord", "DeploymentResult", "DeploymentStatus", "ResourceHandles", "SslStatus",
    "Stage", "StageError", "StageState", "StageStatus", "STAGE_ORDER",
    "ProgressEvent",
]
