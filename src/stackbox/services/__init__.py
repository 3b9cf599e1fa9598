from .events import ProgressEventLog
from .repository import DeploymentRepository, DynamoDeploymentRepository, InMemoryDeploymentRepository

__all__ = ["ProgressEventLog", "DeploymentRepository", "DynamoDeploymentRepository", "InMemoryDeploymentRepository"]
