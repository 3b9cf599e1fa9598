import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional

from boto3.dynamodb.conditions import Key

from stackbox.errors import ExternalAPIError
from stackbox.models import DeploymentRecord

logger = logging.getLogger(__name__)

SORT_KEY_PREFIX = "DEPLOYMENT#"


class DeploymentRepository(ABC):
    """Persistence contract for deployment records."""

    @abstractmethod
    def save(self, record: DeploymentRecord) -> None:
        """Insert or replace one run's record."""
        raise NotImplementedError

    @abstractmethod
    def get(self, tenant_id: str, deployment_id: str) -> Optional[DeploymentRecord]:
        raise NotImplementedError

    @abstractmethod
    def list_for_tenant(self, tenant_id: str, limit: int = 20) -> List[DeploymentRecord]:
        """Newest run first."""
        raise NotImplementedError

    def latest(self, tenant_id: str) -> Optional[DeploymentRecord]:
        records = self.list_for_tenant(tenant_id, limit=1)
        return records[0] if records else None


class InMemoryDeploymentRepository(DeploymentRepository):
    def __init__(self):
        self._store: Dict[str, Dict[str, DeploymentRecord]] = {}
        self._lock = Lock()

    def save(self, record: DeploymentRecord) -> None:
        with self._lock:
            self._store.setdefault(record.tenant_id, {})[record.deployment_id] = record.model_copy(deep=True)

    def get(self, tenant_id: str, deployment_id: str) -> Optional[DeploymentRecord]:
        with self._lock:
            record = self._store.get(tenant_id, {}).get(deployment_id)
            return record.model_copy(deep=True) if record else None

    def list_for_tenant(self, tenant_id: str, limit: int = 20) -> List[DeploymentRecord]:
        with self._lock:
            runs = self._store.get(tenant_id, {})
            # ULIDs sort by creation time
            ids = sorted(runs, reverse=True)[:limit]
            return [runs[i].model_copy(deep=True) for i in ids]


class DynamoDeploymentRepository(DeploymentRepository):
    """One item per run: tenant_id + sk "DEPLOYMENT#<ulid>"."""

    def __init__(self, dynamodb_resource, table_name: str):
        self.table = dynamodb_resource.Table(table_name)
        self.table_name = table_name

    def save(self, record: DeploymentRecord) -> None:
        item = {
            "tenant_id": record.tenant_id,
            "sk": f"{SORT_KEY_PREFIX}{record.deployment_id}",
            "deployment_id": record.deployment_id,
            "status": record.status.value,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "record": record.model_dump_json(),
        }
        try:
            self.table.put_item(Item=item)
        except Exception as e:
            raise ExternalAPIError(
                f"Failed to save deployment {record.deployment_id}: {e}", operation="PutItem"
            ) from e

    def get(self, tenant_id: str, deployment_id: str) -> Optional[DeploymentRecord]:
        response = self.table.get_item(Key={"tenant_id": tenant_id, "sk": f"{SORT_KEY_PREFIX}{deployment_id}"})
        item = response.get("Item")
        if not item:
            return None
        return DeploymentRecord.model_validate_json(item["record"])

    def list_for_tenant(self, tenant_id: str, limit: int = 20) -> List[DeploymentRecord]:
        response = self.table.query(
            KeyConditionExpression=Key("tenant_id").eq(tenant_id) & Key("sk").begins_with(SORT_KEY_PREFIX),
            ScanIndexForward=False,  # Newest first
            Limit=limit,
        )
        return [DeploymentRecord.model_validate_json(item["record"]) for item in response.get("Items", [])]
