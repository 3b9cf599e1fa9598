import unittest
from stackbox.models import (
    CompensationStatus,
    DeploymentRecord,
    SecretHandles,
    SecretRef,
    Stage,
    StageStatus,
    TenantConfig,
)
from fakes import FakeStack, database_instance


class TestRollbackManager(unittest.TestCase):
    def setUp(self):
        self.stack = FakeStack()
        self.record = DeploymentRecord.for_tenant(TenantConfig(tenant_id="acme-1"))

    def test_nothing_succeeded(self):
        report = self.stack.rollback.rollback(self.record)
        self.assertEqual(report.results, [])
        self.assertTrue(report.succeeded)
        self.assertIsNotNone(report.finished_at)

    def test_deletes_both_secrets(self):
        self.record.succeed_stage(Stage.SECRETS, SecretHandles(
            database=SecretRef(name="stackbox/tenants/acme-1/database", arn="arn:1"),
            integrations=SecretRef(name="stackbox/tenants/acme-1/integrations", arn="arn:2"),
        ))

        report = self.stack.rollback.rollback(self.record)

        self.assertEqual(report.results[0].status, CompensationStatus.SCHEDULED)
        self.assertIn("30 days", report.results[0].detail)
        deleted = [c.args[0] for c in self.stack.secret_store.delete_secret.call_args_list]
        self.assertEqual(deleted, ["stackbox/tenants/acme-1/database", "stackbox/tenants/acme-1/integrations"])
        self.assertEqual(self.record.stage_status(Stage.SECRETS), StageStatus.ROLLED_BACK)

    def test_database_delete_keeps_final_snapshot(self):
        self.record.succeed_stage(Stage.DATABASE, database_instance())

        report = self.stack.rollback.rollback(self.record)

        identifier, snapshot = self.stack.databases.delete_database.call_args[0]
        self.assertEqual(identifier, "stackbox-db-acme-1")
        self.assertTrue(snapshot.startswith("stackbox-db-acme-1-final-"))
        self.assertEqual(report.results[0].status, CompensationStatus.SUCCEEDED)

    def test_failed_compensation_does_not_stop_others(self):
        self.record.succeed_stage(Stage.DATABASE, database_instance())
        self.record.succeed_stage(Stage.SECRETS, SecretHandles(
            database=SecretRef(name="stackbox/tenants/acme-1/database", arn="arn:1")
        ))
        self.stack.secret_store.delete_secret.side_effect = RuntimeError("denied")

        report = self.stack.rollback.rollback(self.record)

        self.assertEqual(report.stages, ["secrets", "database"])
        self.assertEqual([f.stage for f in report.failures], ["secrets"])
        self.assertEqual(report.failures[0].resource, "stackbox/tenants/acme-1/database")
        self.assertEqual(self.stack.calls, ["database"])
        self.assertEqual(self.record.stage_status(Stage.SECRETS), StageStatus.SUCCEEDED)
        self.assertEqual(self.record.stage_status(Stage.DATABASE), StageStatus.ROLLED_BACK)

    def test_certificate_is_kept(self):
        self.record.succeed_stage(Stage.CERTIFICATE, "arn:aws:acm:cert")
        report = self.stack.rollback.rollback(self.record)
        self.assertEqual(report.results[0].status, CompensationStatus.SKIPPED)
        self.assertEqual(report.results[0].resource, "arn:aws:acm:cert")


if __name__ == "__main__":
    unittest.main()
