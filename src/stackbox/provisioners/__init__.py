from .base import Outcome, Provisioned, find_or_create
from .network import NetworkResolver
from .dns import DnsRecordManager
from .certificate import CertificateProvisioner
from .database import DatabaseProvisioner, TIER_POLICIES
from .load_balancer import LoadBalancerProvisioner
from .cdn import CdnProvisioner
from .containers import ContainerWorkloadDeployer

__all__ = [
    "Outcome", "Provisioned", "find_or_create",
    "NetworkResolver", "DnsRecordManager", "CertificateProvisioner", "DatabaseProvisioner",
    "TIER_POLICIES", "LoadBalancerProvisioner", "CdnProvisioner", "ContainerWorkloadDeployer",
]
