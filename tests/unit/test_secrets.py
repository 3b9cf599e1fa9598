import unittest
from unittest.mock import MagicMock
from botocore.exceptions import ClientError
from moto import mock_aws
import boto3
from stackbox.errors import ExternalAPIError
from stackbox.models import CredentialBundle, IntegrationCredentials
from stackbox.secrets import SecretStore


def make_bundle(password="initial-password"):
    return CredentialBundle(
        host="acme.rds.local",
        username="sbacme1abc",
        password=password,
        database_name="stackbox_acme_1",
        databases={"crm": "crm_acme_1"},
    )


@mock_aws
class TestSecretStore(unittest.TestCase):
    def setUp(self):
        self.region = "us-east-1"
        self.client = boto3.client("secretsmanager", region_name=self.region)
        self.store = SecretStore(self.client)
        self.tenant_id = "acme-1"

    def test_store_and_get_credentials(self):
        ref = self.store.store_credentials(self.tenant_id, make_bundle())
        self.assertEqual(ref.name, "stackbox/tenants/acme-1/database")

        bundle = self.store.get_credentials(self.tenant_id)
        self.assertEqual(bundle.password.get_secret_value(), "initial-password")
        self.assertEqual(bundle.host, "acme.rds.local")

    def test_store_is_idempotent(self):
        first = self.store.store_credentials(self.tenant_id, make_bundle())
        second = self.store.store_credentials(self.tenant_id, make_bundle("other"))
        self.assertEqual(first.arn, second.arn)
        self.assertEqual(self.store.get_credentials(self.tenant_id).password.get_secret_value(), "other")

    def test_tenants_do_not_collide(self):
        self.store.store_credentials("acme-1", make_bundle("one"))
        self.store.store_credentials("acme-2", make_bundle("two"))
        self.assertEqual(self.store.get_credentials("acme-1").password.get_secret_value(), "one")
        self.assertEqual(self.store.get_credentials("acme-2").password.get_secret_value(), "two")

    def test_rotate_password(self):
        self.store.store_credentials(self.tenant_id, make_bundle())
        self.store.rotate_password(self.tenant_id, "rotated")
        bundle = self.store.get_credentials(self.tenant_id)
        self.assertEqual(bundle.password.get_secret_value(), "rotated")
        self.assertEqual(bundle.username, "sbacme1abc")

    def test_caching(self):
        ref = self.store.store_credentials(self.tenant_id, make_bundle())
        self.store.get_credentials(self.tenant_id)
        self.assertIn(ref.name, self.store._cache)

        # Change the value behind the store's back
        self.client.put_secret_value(SecretId=ref.name, SecretString=make_bundle("changed").to_secret_string())
        cached = self.store.get_credentials(self.tenant_id)
        self.assertEqual(cached.password.get_secret_value(), "initial-password")

        self.store._cache = {}
        fresh = self.store.get_credentials(self.tenant_id)
        self.assertEqual(fresh.password.get_secret_value(), "changed")

    def test_missing_credentials(self):
        with self.assertRaises(ExternalAPIError) as ctx:
            self.store.get_credentials("nobody")
        self.assertEqual(ctx.exception.code, "ResourceNotFoundException")
        self.assertIsNone(self.store.find_credentials_ref("nobody"))

    def test_integration_credentials_merge(self):
        self.store.store_integration_credentials(self.tenant_id, IntegrationCredentials(stripe="sk_test_1"))
        self.store.store_integration_credentials(
            self.tenant_id, IntegrationCredentials(smtp={"host": "smtp.example.com"})
        )
        stored = self.store.get_integration_credentials(self.tenant_id)
        self.assertEqual(stored["stripe"], "sk_test_1")
        self.assertEqual(stored["smtp"]["host"], "smtp.example.com")

    def test_service_connection(self):
        self.store.store_credentials(self.tenant_id, make_bundle())
        connection = self.store.get_service_connection(self.tenant_id, "crm")
        self.assertEqual(connection["database"], "crm_acme_1")
        self.assertEqual(connection["password"], "initial-password")

    def test_list_and_delete_tenant_secrets(self):
        self.store.store_credentials(self.tenant_id, make_bundle())
        self.store.store_integration_credentials(self.tenant_id, IntegrationCredentials(stripe="sk"))
        self.store.store_credentials("acme-2", make_bundle())

        listed = self.store.list_tenant_secrets(self.tenant_id)
        self.assertEqual(len(listed), 2)
        self.assertTrue(all("acme-1" in s["name"] for s in listed))

        results = self.store.delete_tenant_secrets(self.tenant_id)
        self.assertEqual({r["status"] for r in results}, {"scheduled_for_deletion"})
        with self.assertRaises(ExternalAPIError):
            self.store.get_credentials(self.tenant_id)
        self.assertEqual(self.store.get_credentials("acme-2").password.get_secret_value(), "initial-password")

    def test_delete_missing_secret(self):
        self.assertFalse(self.store.delete_secret("stackbox/tenants/nobody/database"))


class TestSecretStoreRestore(unittest.TestCase):
    def test_restores_secret_scheduled_for_deletion(self):
        client = MagicMock()
        client.create_secret.side_effect = ClientError(
            {"Error": {"Code": "InvalidRequestException", "Message": "scheduled for deletion"}}, "CreateSecret"
        )
        client.describe_secret.return_value = {"Name": "n", "ARN": "arn:secret", "DeletedDate": "2026-01-01"}
        client.update_secret.return_value = {"ARN": "arn:secret"}

        ref = SecretStore(client).store_credentials("acme-1", make_bundle())

        client.restore_secret.assert_called_once_with(SecretId="stackbox/tenants/acme-1/database")
        self.assertEqual(ref.arn, "arn:secret")

    def test_restore_failure_is_wrapped(self):
        client = MagicMock()
        client.create_secret.side_effect = ClientError(
            {"Error": {"Code": "InvalidRequestException", "Message": "scheduled for deletion"}}, "CreateSecret"
        )
        client.describe_secret.return_value = {"Name": "n", "ARN": "arn:secret", "DeletedDate": "2026-01-01"}
        client.restore_secret.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "RestoreSecret"
        )

        with self.assertRaises(ExternalAPIError) as ctx:
            SecretStore(client).store_credentials("acme-1", make_bundle())

        self.assertEqual(ctx.exception.operation, "RestoreSecret")
        self.assertEqual(ctx.exception.code, "AccessDeniedException")
        client.update_secret.assert_not_called()

    def test_other_create_errors_propagate(self):
        client = MagicMock()
        client.create_secret.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "CreateSecret"
        )
        with self.assertRaises(ExternalAPIError) as ctx:
            SecretStore(client).store_credentials("acme-1", make_bundle())
        self.assertEqual(ctx.exception.code, "AccessDeniedException")


if __name__ == "__main__":
    unittest.main()
