import json
import logging
import signal
import time
from concurrent.futures import wait
from typing import Dict

import boto3

from stackbox.config import Settings
from stackbox.container import build_service
from stackbox.errors import ConfigValidationError
from stackbox.orchestrator import parse_tenant

logger = logging.getLogger(__name__)

# receive_message accepts 1 to 10
SQS_MAX_BATCH = 10


class ProvisioningPoller:
    """Long-polls the signup queue and hands each tenant to the provisioning pool.

    A message is deleted once its run reaches a terminal state. Messages that
    cannot be parsed are dropped; anything else returns to the queue after the
    visibility timeout.
    """

    def __init__(self, service, queue_url: str, sqs_client=None, region_name: str = "us-east-1"):
        self.service = service
        self.queue_url = queue_url
        self.sqs = sqs_client or boto3.client("sqs", region_name=region_name)
        self.running = True
        self._pending: Dict[str, object] = {}

    def install_signal_handlers(self):
        # Graceful shutdown
        signal.signal(signal.SIGTERM, self.stop)
        signal.signal(signal.SIGINT, self.stop)

    def stop(self, *args):
        logger.info("Stopping provisioning worker...")
        self.running = False

    def start(self):
        logger.info("Starting provisioning worker, polling %s", self.queue_url)
        while self.running:
            try:
                self.poll_once()
            except Exception as e:
                logger.error("Error polling SQS: %s", e)
                time.sleep(5)
        self.drain()

    def poll_once(self, wait_seconds: int = 20) -> int:
        response = self.sqs.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=min(self.service.pool.max_workers, SQS_MAX_BATCH),
            WaitTimeSeconds=wait_seconds,  # Long polling
            MessageAttributeNames=["All"],
        )
        messages = response.get("Messages", [])
        for message in messages:
            self.process_message(message)
        return len(messages)

    def process_message(self, message):
        receipt_handle = message["ReceiptHandle"]
        try:
            tenant = parse_tenant(json.loads(message["Body"]))
        except (ValueError, ConfigValidationError) as e:
            logger.error("Dropping invalid provisioning request %s: %s", message.get("MessageId"), e)
            self._delete(receipt_handle)
            return None

        logger.info("Provisioning tenant %s (%s)", tenant.tenant_id, tenant.tier_key)
        future = self.service.submit(tenant)
        self._pending[receipt_handle] = future
        future.add_done_callback(lambda f, handle=receipt_handle: self._completed(handle, f))
        return future

    def _completed(self, receipt_handle: str, future):
        self._pending.pop(receipt_handle, None)
        if future.cancelled() or future.exception() is not None:
            logger.error("Provisioning run did not finish, leaving message for retry")
            return
        record = future.result()
        logger.info("Tenant %s finished with status %s", record.tenant_id, record.status.value)
        self._delete(receipt_handle)

    def _delete(self, receipt_handle: str):
        try:
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)
        except Exception as e:
            logger.error("Failed to delete message: %s", e)

    def drain(self):
        wait(list(self._pending.values()))
        self.service.shutdown(wait=True)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = Settings.from_env()
    if not settings.queue_url:
        raise SystemExit("PROVISIONING_QUEUE_URL is not set")
    poller = ProvisioningPoller(build_service(settings), settings.queue_url, region_name=settings.region)
    poller.install_signal_handlers()
    poller.start()


if __name__ == "__main__":
    main()
