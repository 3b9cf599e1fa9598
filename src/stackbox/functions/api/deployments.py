import json
import logging
from typing import Optional

import boto3

from stackbox.config import Settings
from stackbox.container import build_service
from stackbox.errors import ConfigValidationError, DeploymentNotFoundError, InvalidTransitionError
from stackbox.models import DeploymentResult
from stackbox.orchestrator import parse_tenant

logger = logging.getLogger(__name__)


class DeploymentAPI:
    def __init__(self, settings: Optional[Settings] = None, service=None, sqs_client=None):
        self.settings = settings or Settings.from_env()
        self._service = service
        self.sqs = sqs_client or boto3.client("sqs", region_name=self.settings.region)

    @property
    def service(self):
        if self._service is None:
            self._service = build_service(self.settings)
        return self._service

    def enqueue_provisioning(self, data: dict) -> dict:
        tenant = parse_tenant(data)
        if not self.settings.queue_url:
            raise ConfigValidationError("PROVISIONING_QUEUE_URL is not set")
        response = self.sqs.send_message(
            QueueUrl=self.settings.queue_url,
            MessageBody=tenant.model_dump_json(),
            MessageAttributes={"tenant_id": {"DataType": "String", "StringValue": tenant.tenant_id}},
        )
        logger.info("Queued provisioning for %s", tenant.tenant_id)
        return {"tenant_id": tenant.tenant_id, "status": "queued", "message_id": response["MessageId"]}

    def get_status(self, tenant_id: str) -> dict:
        record = self.service.get_status(tenant_id)
        return DeploymentResult.from_record(record).model_dump(mode="json")

    def deprovision(self, tenant_id: str) -> dict:
        return self.service.deprovision(tenant_id).model_dump(mode="json")

    def upgrade(self, tenant_id: str, data: dict) -> dict:
        if "plan" not in data:
            raise ConfigValidationError("Missing plan")
        try:
            upgrade = self.service.upgrade_tier(tenant_id, data["plan"])
        except ValueError as e:
            raise ConfigValidationError(str(e)) from e
        return upgrade.model_dump(mode="json")


def _response(status_code: int, body) -> dict:
    return {"statusCode": status_code, "body": json.dumps(body)}


def handler(event, context, api: Optional[DeploymentAPI] = None):
    api = api or DeploymentAPI()
    http_method = event.get("httpMethod") or event.get("requestContext", {}).get("http", {}).get("method")
    path_params = event.get("pathParameters") or {}
    tenant_id = path_params.get("id")

    try:
        if http_method == "POST":
            body = json.loads(event.get("body") or "{}")
            return _response(202, api.enqueue_provisioning(body))

        if http_method in ("GET", "DELETE", "PATCH") and not tenant_id:
            return _response(400, {"error": "Missing ID"})

        if http_method == "GET":
            return _response(200, api.get_status(tenant_id))
        elif http_method == "DELETE":
            return _response(200, api.deprovision(tenant_id))
        elif http_method == "PATCH":
            body = json.loads(event.get("body") or "{}")
            return _response(200, api.upgrade(tenant_id, body))

        return _response(405, {"error": "Method not allowed"})

    except (ConfigValidationError, json.JSONDecodeError) as e:
        return _response(400, {"error": str(e)})
    except DeploymentNotFoundError as e:
        return _response(404, {"error": str(e)})
    except InvalidTransitionError as e:
        return _response(409, {"error": str(e)})
    except Exception as e:
        logger.exception("Unhandled error in deployments API")
        return _response(500, {"error": str(e)})
