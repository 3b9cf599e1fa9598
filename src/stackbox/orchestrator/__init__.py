from .pipeline import ProvisioningOrchestrator
from .rollback import RollbackManager
from .service import ProvisioningService, parse_tenant

__all__ = ["ProvisioningOrchestrator", "RollbackManager", "ProvisioningService", "parse_tenant"]
