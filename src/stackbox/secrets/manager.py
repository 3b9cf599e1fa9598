import json
import logging
import time
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from stackbox.errors import ExternalAPIError
from stackbox.models import CredentialBundle, IntegrationCredentials, SecretRef
from stackbox.naming import ResourceNames
from stackbox.provisioners.base import api_error, error_code, provider_call

logger = logging.getLogger(__name__)


class SecretStore:
    """Tenant-scoped credential storage on top of Secrets Manager.

    Values are only handed to the database and container provisioners; every
    other component works with the SecretRef returned by the store calls.
    """

    def __init__(
        self,
        client,
        prefix: str = "stackbox",
        domain: str = "stackbox.io",
        recovery_window_days: int = 30,
    ):
        self.client = client
        self.prefix = prefix
        self.domain = domain
        self.recovery_window_days = recovery_window_days
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._cache_ttl = 300  # 5 minutes

    def _names(self, tenant_id: str) -> ResourceNames:
        return ResourceNames(tenant_id, self.prefix, self.domain)

    def store_credentials(self, tenant_id: str, bundle: CredentialBundle) -> SecretRef:
        names = self._names(tenant_id)
        ref = self._put_secret(
            names,
            names.database_secret,
            bundle.to_secret_string(),
            description=f"Database credentials for tenant {tenant_id}",
            secret_type="DatabaseCredentials",
        )
        logger.info("Stored database credentials for tenant %s", tenant_id)
        return ref

    def store_integration_credentials(self, tenant_id: str, integrations: IntegrationCredentials) -> SecretRef:
        names = self._names(tenant_id)
        current = self._read(names.integrations_secret, use_cache=False)
        merged = json.loads(current) if current else {}
        merged.update(integrations.model_dump(exclude_none=True))
        ref = self._put_secret(
            names,
            names.integrations_secret,
            json.dumps(merged),
            description=f"Integration credentials for tenant {tenant_id}",
            secret_type="IntegrationCredentials",
        )
        logger.info("Stored integration credentials for tenant %s", tenant_id)
        return ref

    def find_credentials_ref(self, tenant_id: str) -> Optional[SecretRef]:
        return self._describe(self._names(tenant_id).database_secret)

    def get_credentials(self, tenant_id: str) -> CredentialBundle:
        name = self._names(tenant_id).database_secret
        value = self._read(name)
        if value is None:
            raise ExternalAPIError(
                f"Database credentials not found for tenant {tenant_id}",
                operation="GetSecretValue",
                code="ResourceNotFoundException",
            )
        return CredentialBundle.from_secret_string(value)

    def get_integration_credentials(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        value = self._read(self._names(tenant_id).integrations_secret)
        if value is None:
            return None
        return json.loads(value)

    def rotate_password(self, tenant_id: str, new_password: str) -> SecretRef:
        current = self.get_credentials(tenant_id)
        names = self._names(tenant_id)
        ref = self._put_secret(
            names,
            names.database_secret,
            current.with_password(new_password).to_secret_string(),
            description=f"Database credentials for tenant {tenant_id}",
            secret_type="DatabaseCredentials",
        )
        logger.info("Rotated database password for tenant %s", tenant_id)
        return ref

    def get_service_connection(self, tenant_id: str, service: str) -> Dict[str, Any]:
        credentials = self.get_credentials(tenant_id)
        return {
            "host": credentials.host,
            "port": credentials.port,
            "username": credentials.username,
            "password": credentials.password.get_secret_value(),
            "database": credentials.database_for(service),
        }

    def list_tenant_secrets(self, tenant_id: str) -> List[Dict[str, Any]]:
        secrets = []
        paginator = self.client.get_paginator("list_secrets")
        try:
            for page in paginator.paginate(
                Filters=[
                    {"Key": "tag-key", "Values": ["TenantID"]},
                    {"Key": "tag-value", "Values": [tenant_id]},
                ]
            ):
                for secret in page.get("SecretList", []):
                    tags = {t["Key"]: t["Value"] for t in secret.get("Tags", [])}
                    # tag-key and tag-value filters match independently
                    if tags.get("TenantID") != tenant_id:
                        continue
                    secrets.append({"name": secret["Name"], "arn": secret["ARN"], "tags": tags})
        except ClientError as e:
            raise api_error(e, "ListSecrets") from e
        return secrets

    def delete_secret(self, name: str, recovery_window_days: Optional[int] = None) -> bool:
        """Schedule a secret for deletion. Returns False if it did not exist."""
        window = recovery_window_days or self.recovery_window_days
        try:
            self.client.delete_secret(SecretId=name, RecoveryWindowInDays=window)
        except ClientError as e:
            if error_code(e) == "ResourceNotFoundException":
                return False
            raise api_error(e, "DeleteSecret") from e
        finally:
            self._cache.pop(name, None)
        logger.info("Scheduled secret %s for deletion in %d days", name, window)
        return True

    def delete_tenant_secrets(self, tenant_id: str, recovery_window_days: Optional[int] = None) -> List[Dict[str, str]]:
        results = []
        for secret in self.list_tenant_secrets(tenant_id):
            try:
                self.delete_secret(secret["name"], recovery_window_days)
                results.append({"name": secret["name"], "status": "scheduled_for_deletion"})
            except ExternalAPIError as e:
                logger.error("Failed to delete secret %s: %s", secret["name"], e)
                results.append({"name": secret["name"], "status": "deletion_failed", "error": str(e)})
        return results

    def _put_secret(self, names: ResourceNames, name: str, value: str, description: str, secret_type: str) -> SecretRef:
        try:
            response = self.client.create_secret(
                Name=name,
                SecretString=value,
                Description=description,
                Tags=names.tags(Type=secret_type),
            )
        except ClientError as e:
            code = error_code(e)
            if code == "ResourceExistsException":
                response = self._update(name, value)
            elif code == "InvalidRequestException" and self._pending_deletion(name):
                # A previous rollback scheduled this secret for deletion
                logger.info("Restoring secret %s scheduled for deletion", name)
                with provider_call("RestoreSecret"):
                    self.client.restore_secret(SecretId=name)
                response = self._update(name, value)
            else:
                raise api_error(e, "CreateSecret") from e
        self._cache.pop(name, None)
        return SecretRef(name=name, arn=response["ARN"])

    def _update(self, name: str, value: str) -> Dict[str, Any]:
        try:
            return self.client.update_secret(SecretId=name, SecretString=value)
        except ClientError as e:
            raise api_error(e, "UpdateSecret") from e

    def _describe(self, name: str) -> Optional[SecretRef]:
        try:
            response = self.client.describe_secret(SecretId=name)
        except ClientError as e:
            if error_code(e) == "ResourceNotFoundException":
                return None
            raise api_error(e, "DescribeSecret") from e
        if response.get("DeletedDate"):
            return None
        return SecretRef(name=response["Name"], arn=response["ARN"])

    def _pending_deletion(self, name: str) -> bool:
        try:
            response = self.client.describe_secret(SecretId=name)
        except ClientError:
            return False
        return bool(response.get("DeletedDate"))

    def _read(self, name: str, use_cache: bool = True) -> Optional[str]:
        if use_cache and name in self._cache:
            entry = self._cache[name]
            if time.time() - entry["timestamp"] < self._cache_ttl:
                return entry["value"]

        try:
            response = self.client.get_secret_value(SecretId=name)
        except ClientError as e:
            if error_code(e) == "ResourceNotFoundException":
                return None
            raise api_error(e, "GetSecretValue") from e

        value = response["SecretString"]
        self._cache[name] = {"value": value, "timestamp": time.time()}
        return value
