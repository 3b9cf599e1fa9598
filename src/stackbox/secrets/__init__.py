from .manager import SecretStore

__all__ = ["SecretStore"]
