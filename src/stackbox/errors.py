from typing import List, Optional


class ProvisioningError(Exception):
    """Base class for every error raised by the provisioning core."""

    kind = "provisioning_error"


class ConfigValidationError(ProvisioningError):
    """Tenant or process configuration is unusable. Nothing was created."""

    kind = "config_validation_error"


class ExternalAPIError(ProvisioningError):
    kind = "external_api_error"

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        operation: Optional[str] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.operation = operation
        self.code = code

    def __str__(self) -> str:
        message = super().__str__()
        if self.operation and self.code:
            return f"{self.operation} failed ({self.code}): {message}"
        return message


class ResourceFailedError(ProvisioningError):
    """The provider reported a terminal failure state for a resource."""

    kind = "resource_failed"

    def __init__(self, resource: str, state: str):
        super().__init__(f"{resource} entered terminal state {state}")
        self.resource = resource
        self.state = state


class ValidationTimeoutError(ProvisioningError):
    kind = "validation_timeout"

    def __init__(self, resource: str, waited_seconds: float):
        super().__init__(f"Timed out after {int(waited_seconds)}s waiting for {resource}")
        self.resource = resource
        self.waited_seconds = waited_seconds


class ProvisioningCancelledError(ProvisioningError):
    kind = "cancelled"


class DeploymentNotFoundError(ProvisioningError):
    kind = "not_found"

    def __init__(self, tenant_id: str):
        super().__init__(f"No deployment found for tenant {tenant_id}")
        self.tenant_id = tenant_id


class InvalidTransitionError(ProvisioningError):
    kind = "invalid_transition"


class RollbackPartialFailureError(ProvisioningError):
    """A run failed and at least one compensating action failed as well."""

    kind = "rollback_partial_failure"

    def __init__(self, original: str, failures: List[str]):
        self.original = original
        self.failures = failures
        joined = "; ".join(failures)
        super().__init__(f"{original} (rollback incomplete: {joined})")
