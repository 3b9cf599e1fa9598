import threading
import unittest
from concurrent.futures import Future
from unittest.mock import patch
from stackbox.errors import ConfigValidationError, DeploymentNotFoundError, InvalidTransitionError
from stackbox.models import ContainerDeployment, DatabaseUpgrade, DeploymentStatus, Plan, StageStatus
from stackbox.orchestrator import ProvisioningService
from fakes import FakeStack


class TestProvisioningService(unittest.TestCase):
    def setUp(self):
        self.stack = FakeStack()
        self.service = ProvisioningService(
            self.stack.orchestrator,
            self.stack.repository,
            self.stack.events,
            self.stack.databases,
            self.stack.rollback,
            max_workers=2,
        )

    def tearDown(self):
        self.service.shutdown()

    def test_provision_returns_result(self):
        result = self.service.provision({"tenant_id": "acme-1", "tier": "trial"})
        self.assertTrue(result.success)
        self.assertEqual(result.tenant_url, "https://acme-1.stackbox.io")
        self.assertEqual(set(result.stage_statuses.values()), {"succeeded"})

    def test_invalid_config(self):
        with self.assertRaises(ConfigValidationError):
            self.service.provision({"tenant_id": "Not Valid"})

    def test_get_status(self):
        self.service.provision({"tenant_id": "acme-1"})
        self.assertEqual(self.service.get_status("acme-1").status, DeploymentStatus.COMPLETED)
        with self.assertRaises(DeploymentNotFoundError):
            self.service.get_status("nobody")

    def test_deprovision_completed_tenant(self):
        self.service.provision({"tenant_id": "acme-1"})

        report = self.service.deprovision("acme-1")

        self.assertTrue(report.succeeded)
        self.assertEqual(report.stages[0], "containers")
        record = self.service.get_status("acme-1")
        self.assertEqual(record.status, DeploymentStatus.ROLLED_BACK)
        self.assertTrue(all(s == StageStatus.ROLLED_BACK.value for s in record.stage_statuses().values()))

        # Second call is a no-op
        again = self.service.deprovision("acme-1")
        self.assertEqual(again.deployment_id, report.deployment_id)
        self.assertEqual(self.stack.calls.count("database"), 1)

    def test_deprovision_cancels_in_flight_run(self):
        started = threading.Event()

        def slow_database(tenant, context=None):
            started.set()
            context.wait(5)
            context.check()

        self.stack.databases.ensure_database.side_effect = slow_database
        future = self.service.submit({"tenant_id": "acme-1"})
        self.assertTrue(started.wait(5))

        report = self.service.deprovision("acme-1")

        record = future.result(5)
        self.assertEqual(record.error.kind, "cancelled")
        self.assertEqual(record.status, DeploymentStatus.ROLLED_BACK)
        self.assertEqual(report.stages, ["certificate"])

    def test_deprovision_during_last_stage(self):
        started = threading.Event()
        release = threading.Event()

        def slow_deploy(tenant, *args):
            started.set()
            release.wait(5)
            return ContainerDeployment(cluster="stackbox-tenants", services={"website": "arn:svc:website"})

        self.stack.containers.deploy_services.side_effect = slow_deploy
        future = self.service.submit({"tenant_id": "acme-1"})
        self.assertTrue(started.wait(5))
        threading.Timer(0.1, release.set).start()

        report = self.service.deprovision("acme-1")

        self.assertEqual(future.result(5).status, DeploymentStatus.ROLLED_BACK)
        self.assertEqual(report.stages[0], "containers")
        self.assertTrue(report.succeeded)
        self.assertIn("database", self.stack.calls)

    def test_deprovision_after_run_completed_despite_cancel(self):
        self.service.provision({"tenant_id": "acme-1"})
        finished = Future()
        finished.set_result(self.service.get_status("acme-1"))

        with patch.object(self.service.pool, "cancel", return_value=finished):
            report = self.service.deprovision("acme-1")

        self.assertEqual(report.stages[0], "containers")
        self.assertEqual(self.service.get_status("acme-1").status, DeploymentStatus.ROLLED_BACK)

    def test_upgrade_tier(self):
        self.stack.databases.upgrade_database.return_value = DatabaseUpgrade(
            identifier="stackbox-db-acme-1",
            snapshot_id="snap",
            instance_class="db.t3.small",
            allocated_storage=50,
            multi_az=True,
            backup_retention_period=7,
        )
        self.service.provision({"tenant_id": "acme-1"})

        upgrade = self.service.upgrade_tier("acme-1", "professional")

        self.stack.databases.upgrade_database.assert_called_once_with("acme-1", Plan.PROFESSIONAL)
        self.assertEqual(upgrade.apply_at, "next maintenance window")
        record = self.service.get_status("acme-1")
        self.assertEqual(record.tier.value, "paid")
        self.assertEqual(record.plan, Plan.PROFESSIONAL)
        self.assertEqual(self.service.get_events("acme-1")[0].status, "upgrade_scheduled")

    def test_upgrade_requires_completed_deployment(self):
        self.stack.cdn.create_distribution.side_effect = RuntimeError("boom")
        self.service.provision({"tenant_id": "acme-1"})
        with self.assertRaises(InvalidTransitionError):
            self.service.upgrade_tier("acme-1", "basic")


if __name__ == "__main__":
    unittest.main()
