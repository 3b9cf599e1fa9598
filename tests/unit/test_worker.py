import json
import unittest
from concurrent.futures import Future
from unittest.mock import MagicMock
import boto3
from moto import mock_aws
from stackbox.models import DeploymentRecord, DeploymentStatus, TenantConfig
from stackbox.worker.main import ProvisioningPoller


def finished_record(tenant_id="acme-1"):
    record = DeploymentRecord.for_tenant(TenantConfig(tenant_id=tenant_id))
    record.transition(DeploymentStatus.IN_PROGRESS)
    record.transition(DeploymentStatus.COMPLETED)
    return record


@mock_aws
class TestProvisioningPoller(unittest.TestCase):
    def setUp(self):
        self.sqs = boto3.client("sqs", region_name="us-east-1")
        self.queue_url = self.sqs.create_queue(QueueName="stackbox-provisioning-test")["QueueUrl"]
        self.futures = []
        self.service = MagicMock()
        self.service.pool.max_workers = 2
        self.service.submit.side_effect = self._submit
        self.poller = ProvisioningPoller(self.service, self.queue_url, sqs_client=self.sqs)

    def _submit(self, tenant):
        future = Future()
        self.futures.append((tenant, future))
        return future

    def send(self, body):
        self.sqs.send_message(QueueUrl=self.queue_url, MessageBody=body)

    def queued(self):
        attributes = self.sqs.get_queue_attributes(
            QueueUrl=self.queue_url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )["Attributes"]
        return int(attributes["ApproximateNumberOfMessages"]) + int(attributes["ApproximateNumberOfMessagesNotVisible"])

    def test_message_deleted_after_run_finishes(self):
        self.send(json.dumps({"tenant_id": "acme-1", "tier": "paid/basic"}))

        self.assertEqual(self.poller.poll_once(wait_seconds=0), 1)

        tenant, future = self.futures[0]
        self.assertEqual(tenant.tenant_id, "acme-1")
        self.assertEqual(tenant.tier_key, "paid/basic")
        self.assertEqual(self.queued(), 1)

        future.set_result(finished_record())
        self.assertEqual(self.queued(), 0)

    def test_batch_size_capped_for_large_pools(self):
        self.service.pool.max_workers = 16
        self.send(json.dumps({"tenant_id": "acme-1"}))

        self.assertEqual(self.poller.poll_once(wait_seconds=0), 1)
        self.assertEqual(self.futures[0][0].tenant_id, "acme-1")

    def test_failed_run_leaves_message_for_retry(self):
        self.send(json.dumps({"tenant_id": "acme-1"}))
        self.poller.poll_once(wait_seconds=0)

        _, future = self.futures[0]
        future.set_exception(RuntimeError("worker crashed"))

        self.assertEqual(self.queued(), 1)

    def test_invalid_messages_are_dropped(self):
        self.send("not json")
        self.send(json.dumps({"tenant_id": "Bad Tenant"}))

        self.poller.poll_once(wait_seconds=0)
        self.poller.poll_once(wait_seconds=0)

        self.service.submit.assert_not_called()
        self.assertEqual(self.queued(), 0)

    def test_drain_waits_and_shuts_down(self):
        self.send(json.dumps({"tenant_id": "acme-1"}))
        self.poller.poll_once(wait_seconds=0)
        _, future = self.futures[0]
        future.set_result(finished_record())

        self.poller.stop()
        self.poller.drain()

        self.assertFalse(self.poller.running)
        self.service.shutdown.assert_called_once_with(wait=True)

    def test_empty_queue(self):
        self.assertEqual(self.poller.poll_once(wait_seconds=0), 0)


if __name__ == "__main__":
    unittest.main()
