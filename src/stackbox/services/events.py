import logging
import time
from collections import deque
from typing import Any, Dict, List, Optional

from boto3.dynamodb.conditions import Key

from stackbox.models import ProgressEvent

logger = logging.getLogger(__name__)


class ProgressEventLog:
    """Structured progress events for provisioning runs.

    Every event goes to the log; when a table is configured it is also kept
    in DynamoDB for `retention_days`. Persisting an event never fails a run.
    """

    def __init__(self, dynamodb_resource=None, table_name: Optional[str] = None, retention_days: int = 90):
        self.table = dynamodb_resource.Table(table_name) if dynamodb_resource is not None and table_name else None
        self.retention_days = retention_days
        self._recent: deque = deque(maxlen=1000)

    def emit(
        self,
        tenant_id: str,
        deployment_id: str,
        status: str,
        stage: Optional[str] = None,
        message: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProgressEvent:
        event = ProgressEvent(
            tenant_id=tenant_id,
            deployment_id=deployment_id,
            stage=stage,
            status=status,
            message=message,
            metadata=metadata or {},
        )
        logger.info(
            "[%s] %s %s%s",
            tenant_id,
            stage or "deployment",
            status,
            f": {message}" if message else "",
            extra={"event": event.model_dump(mode="json")},
        )

        if self.table is None:
            self._recent.append(event)
            return event

        item = event.model_dump(mode="json")
        # Sort key: the event ULID orders events by time
        item["expires_at"] = int(time.time()) + (self.retention_days * 24 * 60 * 60)
        try:
            self.table.put_item(Item=item)
        except Exception as e:
            logger.warning("Failed to persist progress event %s: %s", event.event_id, e)
        return event

    def get_events(self, tenant_id: str, limit: int = 50) -> List[ProgressEvent]:
        """Newest first."""
        if self.table is None:
            events = [e for e in self._recent if e.tenant_id == tenant_id]
            return list(reversed(events))[:limit]
        try:
            response = self.table.query(
                KeyConditionExpression=Key("tenant_id").eq(tenant_id),
                ScanIndexForward=False,  # Newest first
                Limit=limit,
            )
        except Exception as e:
            logger.warning("Failed to retrieve progress events for %s: %s", tenant_id, e)
            return []
        return [ProgressEvent(**item) for item in response.get("Items", [])]
