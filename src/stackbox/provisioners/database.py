import logging
import secrets
import string
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import ClientError

from stackbox.errors import ExternalAPIError, ResourceFailedError
from stackbox.models import CredentialBundle, DatabaseInstance, DatabaseUpgrade, Plan, TenantConfig
from stackbox.naming import ResourceNames
from stackbox.polling import RunContext, poll_until
from stackbox.provisioners.base import api_error, error_code, find_or_create, provider_call

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class InstancePolicy:
    instance_class: str
    allocated_storage: int
    storage_type: str
    multi_az: bool
    backup_retention_period: int
    deletion_protection: bool

    @property
    def performance_insights(self) -> bool:
        return self.instance_class != SMALLEST_BURSTABLE


SMALLEST_BURSTABLE = "db.t3.micro"
SMALL_BURSTABLE = "db.t3.small"

TIER_POLICIES: Dict[str, InstancePolicy] = {
    "trial": InstancePolicy(SMALLEST_BURSTABLE, 20, "gp2", False, 0, False),
    "paid/basic": InstancePolicy(SMALLEST_BURSTABLE, 20, "gp2", False, 3, True),
    "paid/professional": InstancePolicy(SMALL_BURSTABLE, 50, "gp3", True, 7, True),
}


def policy_for(tier_key: str) -> InstancePolicy:
    try:
        return TIER_POLICIES[tier_key]
    except KeyError:
        raise ValueError(f"No database sizing policy for tier {tier_key!r}") from None


class DatabaseProvisioner:
    def __init__(
        self,
        rds_client,
        network,
        secret_store,
        prefix: str = "stackbox",
        domain: str = "stackbox.io",
        engine: str = "mysql",
        engine_version: str = "8.0.35",
        poll_interval: float = 30,
        timeout: float = 1800,
        log_every: float = 120,
    ):
        self.client = rds_client
        self.network = network
        self.secret_store = secret_store
        self.prefix = prefix
        self.domain = domain
        self.engine = engine
        self.engine_version = engine_version
        self.port = 5432 if engine.startswith("postgres") else 3306
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.log_every = log_every

    @property
    def subnet_group_name(self) -> str:
        return f"{self.prefix}-db-subnet-group"

    def _names(self, tenant_id: str) -> ResourceNames:
        return ResourceNames(tenant_id, self.prefix, self.domain)

    # Shared prerequisites

    def ensure_subnet_group(self) -> str:
        name = self.subnet_group_name

        def find() -> Optional[str]:
            try:
                response = self.client.describe_db_subnet_groups(DBSubnetGroupName=name)
            except ClientError as e:
                if error_code(e) == "DBSubnetGroupNotFoundFault":
                    return None
                raise
            groups = response.get("DBSubnetGroups", [])
            return groups[0]["DBSubnetGroupName"] if groups else None

        def create() -> str:
            vpc_id = self.network.default_vpc()["VpcId"]
            subnet_ids = [s["SubnetId"] for s in self.network.subnets(vpc_id)]
            response = self.client.create_db_subnet_group(
                DBSubnetGroupName=name,
                DBSubnetGroupDescription="StackBox database subnet group",
                SubnetIds=subnet_ids,
                Tags=[{"Key": "Project", "Value": self.prefix}],
            )
            return response["DBSubnetGroup"]["DBSubnetGroupName"]

        with provider_call("CreateDBSubnetGroup"):
            return find_or_create(
                find,
                create,
                duplicate_codes=["DBSubnetGroupAlreadyExists", "DBSubnetGroupAlreadyExistsFault"],
                resource=f"DB subnet group {name}",
            ).value

    def ensure_security_group(self) -> str:
        return self.network.ensure_database_security_group(self.port)

    # Credentials and sizing

    def generate_credentials(self, tenant_id: str) -> CredentialBundle:
        names = self._names(tenant_id)
        # Master usernames are capped at 16 characters
        username = names.db_username_stem + secrets.token_hex(3)
        password = "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(24))
        return CredentialBundle(
            engine=self.engine,
            port=self.port,
            username=username[:16],
            password=password,
            database_name=names.db_name,
            databases=names.service_databases(),
        )

    def policy_for(self, tenant: TenantConfig) -> InstancePolicy:
        return policy_for(tenant.tier_key)

    # Instance lifecycle

    def describe_instance(self, identifier: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.describe_db_instances(DBInstanceIdentifier=identifier)
        except ClientError as e:
            if error_code(e) == "DBInstanceNotFound" or error_code(e) == "DBInstanceNotFoundFault":
                return None
            raise api_error(e, "DescribeDBInstances") from e
        instances = response.get("DBInstances", [])
        return instances[0] if instances else None

    def ensure_database(
        self, tenant: TenantConfig, context: Optional[RunContext] = None
    ) -> Tuple[CredentialBundle, DatabaseInstance]:
        names = self._names(tenant.tenant_id)
        identifier = names.db_instance
        logger.info("Ensuring database %s for tenant %s (%s)", identifier, tenant.tenant_id, tenant.tier_key)

        subnet_group = self.ensure_subnet_group()
        security_group = self.ensure_security_group()
        policy = self.policy_for(tenant)
        credentials = self.generate_credentials(tenant.tenant_id)

        def create() -> Dict[str, Any]:
            response = self.client.create_db_instance(
                DBInstanceIdentifier=identifier,
                DBName=credentials.database_name,
                Engine=self.engine,
                EngineVersion=self.engine_version,
                DBInstanceClass=policy.instance_class,
                AllocatedStorage=policy.allocated_storage,
                StorageType=policy.storage_type,
                StorageEncrypted=True,
                MasterUsername=credentials.username,
                MasterUserPassword=credentials.password.get_secret_value(),
                DBSubnetGroupName=subnet_group,
                VpcSecurityGroupIds=[security_group],
                BackupRetentionPeriod=policy.backup_retention_period,
                PreferredBackupWindow="03:00-04:00",
                PreferredMaintenanceWindow="sun:04:00-sun:05:00",
                MultiAZ=policy.multi_az,
                PubliclyAccessible=False,
                AutoMinorVersionUpgrade=True,
                DeletionProtection=policy.deletion_protection,
                EnablePerformanceInsights=policy.performance_insights,
                Tags=names.tags(Name=identifier, Tier=tenant.tier_key),
            )
            return response["DBInstance"]

        with provider_call("CreateDBInstance"):
            result = find_or_create(
                lambda: self.describe_instance(identifier),
                create,
                duplicate_codes=["DBInstanceAlreadyExists", "DBInstanceAlreadyExistsFault"],
                resource=f"DB instance {identifier}",
            )

        if not result.created:
            credentials = self._recover_credentials(tenant.tenant_id, identifier, credentials)

        try:
            instance = self.wait_until_available(identifier, context)
        except Exception:
            if result.created:
                self._discard_instance(identifier)
            raise
        endpoint = instance.get("Endpoint") or {}
        credentials = credentials.with_endpoint(endpoint.get("Address", ""), endpoint.get("Port", self.port))
        return credentials, self._to_handle(instance)

    def _recover_credentials(
        self, tenant_id: str, identifier: str, generated: CredentialBundle
    ) -> CredentialBundle:
        try:
            return self.secret_store.get_credentials(tenant_id)
        except ExternalAPIError as e:
            if e.code != "ResourceNotFoundException":
                raise
        # The instance survived but its password was never stored; reset it
        logger.warning("No stored credentials for %s, resetting master password", identifier)
        with provider_call("ModifyDBInstance"):
            response = self.client.modify_db_instance(
                DBInstanceIdentifier=identifier,
                MasterUserPassword=generated.password.get_secret_value(),
                ApplyImmediately=True,
            )
        username = response.get("DBInstance", {}).get("MasterUsername")
        if username:
            generated = generated.model_copy(update={"username": username})
        return generated

    def wait_until_available(self, identifier: str, context: Optional[RunContext] = None) -> Dict[str, Any]:
        def check() -> Optional[Dict[str, Any]]:
            instance = self.describe_instance(identifier)
            if instance is None:
                raise ExternalAPIError(f"DB instance {identifier} disappeared", operation="DescribeDBInstances")
            status = instance.get("DBInstanceStatus")
            if status == "available":
                logger.info("DB instance is available: %s", identifier)
                return instance
            if status == "failed":
                raise ResourceFailedError(f"DB instance {identifier}", status)
            logger.debug("DB instance %s status: %s", identifier, status)
            return None

        return poll_until(
            check,
            description=f"DB instance {identifier}",
            interval=self.poll_interval,
            timeout=self.timeout,
            log_every=self.log_every,
            context=context,
        )

    def create_snapshot(self, identifier: str, snapshot_id: str) -> str:
        with provider_call("CreateDBSnapshot"):
            response = self.client.create_db_snapshot(
                DBInstanceIdentifier=identifier,
                DBSnapshotIdentifier=snapshot_id,
                Tags=[{"Key": "Project", "Value": self.prefix}, {"Key": "Type", "Value": "Manual"}],
            )
        logger.info("Created DB snapshot: %s", snapshot_id)
        return response["DBSnapshot"]["DBSnapshotIdentifier"]

    def upgrade_database(self, tenant_id: str, new_plan: Plan) -> DatabaseUpgrade:
        """Resize during the next maintenance window, after a safety snapshot."""
        names = self._names(tenant_id)
        identifier = names.db_instance
        policy = policy_for(f"paid/{Plan(new_plan).value}")

        snapshot_id = self.create_snapshot(identifier, names.db_snapshot("upgrade"))
        with provider_call("ModifyDBInstance"):
            self.client.modify_db_instance(
                DBInstanceIdentifier=identifier,
                DBInstanceClass=policy.instance_class,
                AllocatedStorage=policy.allocated_storage,
                StorageType=policy.storage_type,
                BackupRetentionPeriod=policy.backup_retention_period,
                MultiAZ=policy.multi_az,
                DeletionProtection=policy.deletion_protection,
                ApplyImmediately=False,
            )
        logger.info("Database upgrade to %s scheduled for tenant %s", new_plan, tenant_id)
        return DatabaseUpgrade(
            identifier=identifier,
            snapshot_id=snapshot_id,
            instance_class=policy.instance_class,
            allocated_storage=policy.allocated_storage,
            multi_az=policy.multi_az,
            backup_retention_period=policy.backup_retention_period,
        )

    def delete_database(self, identifier: str, final_snapshot_id: Optional[str]) -> bool:
        """Delete an instance, keeping a final snapshot unless `final_snapshot_id` is None.

        Returns False if it was already gone.
        """
        instance = self.describe_instance(identifier)
        if instance is None:
            return False
        if instance.get("DeletionProtection"):
            with provider_call("ModifyDBInstance"):
                self.client.modify_db_instance(
                    DBInstanceIdentifier=identifier,
                    DeletionProtection=False,
                    ApplyImmediately=True,
                )
        if final_snapshot_id:
            snapshot = {"SkipFinalSnapshot": False, "FinalDBSnapshotIdentifier": final_snapshot_id}
        else:
            snapshot = {"SkipFinalSnapshot": True}
        with provider_call("DeleteDBInstance"):
            self.client.delete_db_instance(
                DBInstanceIdentifier=identifier,
                DeleteAutomatedBackups=final_snapshot_id is None,
                **snapshot,
            )
        logger.info("Deleting DB instance %s (final snapshot %s)", identifier, final_snapshot_id)
        return True

    def _discard_instance(self, identifier: str):
        # Created by this call and never became available; no snapshot to keep
        logger.warning("Removing DB instance %s after a failed create", identifier)
        try:
            self.delete_database(identifier, None)
        except ExternalAPIError as e:
            logger.error("Could not remove DB instance %s: %s", identifier, e)

    def _to_handle(self, instance: Dict[str, Any]) -> DatabaseInstance:
        endpoint = instance.get("Endpoint") or {}
        return DatabaseInstance(
            identifier=instance["DBInstanceIdentifier"],
            endpoint=endpoint.get("Address", ""),
            port=endpoint.get("Port", self.port),
            engine=instance.get("Engine", self.engine),
            instance_class=instance["DBInstanceClass"],
            allocated_storage=instance.get("AllocatedStorage", 0),
            storage_type=instance.get("StorageType", ""),
            multi_az=instance.get("MultiAZ", False),
            backup_retention_period=instance.get("BackupRetentionPeriod", 0),
            deletion_protection=instance.get("DeletionProtection", False),
            status=instance.get("DBInstanceStatus", "available"),
        )
