import unittest
from unittest.mock import MagicMock
from stackbox.errors import ExternalAPIError
from stackbox.provisioners.cdn import CdnProvisioner
from fakes import client_error

CERT = "arn:aws:acm:us-east-1:123:certificate/wild"


def distribution(config):
    return {
        "Id": "E123",
        "ARN": "arn:aws:cloudfront::123:distribution/E123",
        "DomainName": "d111.cloudfront.net",
        "Status": "InProgress",
        "DistributionConfig": config,
    }


class TestCdnProvisioner(unittest.TestCase):
    def setUp(self):
        self.cloudfront = MagicMock()
        self.summaries = []
        self.cloudfront.get_paginator.return_value.paginate.side_effect = lambda: [
            {"DistributionList": {"Items": list(self.summaries)}}
        ]
        self.cloudfront.create_distribution_with_tags.side_effect = lambda DistributionConfigWithTags: {
            "Distribution": distribution(DistributionConfigWithTags["DistributionConfig"])
        }
        self.cdn = CdnProvisioner(self.cloudfront)

    def created_config(self):
        kwargs = self.cloudfront.create_distribution_with_tags.call_args.kwargs
        return kwargs["DistributionConfigWithTags"]["DistributionConfig"]

    def test_create_with_certificate(self):
        ref = self.cdn.create_distribution("acme-1", "acme-1.elb.amazonaws.com", CERT)

        config = self.created_config()
        self.assertEqual(config["Aliases"], {"Quantity": 1, "Items": ["acme-1.stackbox.io"]})
        self.assertEqual(config["ViewerCertificate"]["ACMCertificateArn"], CERT)
        self.assertEqual(config["ViewerCertificate"]["SSLSupportMethod"], "sni-only")
        origin = config["Origins"]["Items"][0]
        self.assertEqual(origin["DomainName"], "acme-1.elb.amazonaws.com")
        self.assertEqual(origin["CustomOriginConfig"]["OriginProtocolPolicy"], "https-only")
        self.assertEqual(config["DefaultCacheBehavior"]["ViewerProtocolPolicy"], "https-only")
        self.assertEqual(config["DefaultCacheBehavior"]["ForwardedValues"]["Headers"]["Items"], ["Host"])
        self.assertEqual(config["PriceClass"], "PriceClass_100")

        self.assertEqual(ref.distribution_id, "E123")
        self.assertEqual(ref.domain_name, "d111.cloudfront.net")
        self.assertEqual(ref.aliases, ["acme-1.stackbox.io"])

    def test_create_without_certificate(self):
        ref = self.cdn.create_distribution("acme-1", "acme-1.elb.amazonaws.com")

        config = self.created_config()
        self.assertEqual(config["Aliases"]["Quantity"], 0)
        self.assertEqual(config["ViewerCertificate"], {"CloudFrontDefaultCertificate": True})
        self.assertEqual(config["Origins"]["Items"][0]["CustomOriginConfig"]["OriginProtocolPolicy"], "http-only")
        self.assertEqual(ref.aliases, [])

    def test_existing_distribution_is_reused(self):
        self.summaries = [
            {"Id": "E999", "Comment": "stackbox CDN for acme-2", "DomainName": "d999.cloudfront.net"},
            {
                "Id": "E123",
                "Comment": "stackbox CDN for acme-1",
                "DomainName": "d111.cloudfront.net",
                "Aliases": {"Quantity": 1, "Items": ["acme-1.stackbox.io"]},
            },
        ]

        ref = self.cdn.create_distribution("acme-1", "acme-1.elb.amazonaws.com", CERT)

        self.cloudfront.create_distribution_with_tags.assert_not_called()
        self.assertEqual(ref.distribution_id, "E123")
        self.assertEqual(ref.aliases, ["acme-1.stackbox.io"])

    def test_update_uses_etag(self):
        self.cloudfront.get_distribution_config.return_value = {
            "ETag": "ETAG1",
            "DistributionConfig": {"Enabled": True, "Comment": "old"},
        }
        self.cloudfront.update_distribution.return_value = {
            "Distribution": distribution({"Enabled": True, "Comment": "new"})
        }

        self.cdn.update_distribution("E123", Comment="new")

        kwargs = self.cloudfront.update_distribution.call_args.kwargs
        self.assertEqual(kwargs["IfMatch"], "ETAG1")
        self.assertEqual(kwargs["DistributionConfig"]["Comment"], "new")

    def test_invalidate(self):
        self.cloudfront.create_invalidation.return_value = {"Invalidation": {"Id": "I1"}}
        self.assertEqual(self.cdn.invalidate("E123"), "I1")
        batch = self.cloudfront.create_invalidation.call_args.kwargs["InvalidationBatch"]
        self.assertEqual(batch["Paths"], {"Quantity": 1, "Items": ["/*"]})

    def test_disable_then_schedule_delete(self):
        self.cloudfront.get_distribution_config.return_value = {
            "ETag": "ETAG1",
            "DistributionConfig": {"Enabled": True},
        }
        self.cloudfront.update_distribution.return_value = {"ETag": "ETAG2"}
        self.cloudfront.delete_distribution.side_effect = client_error("DistributionNotDisabled")

        self.assertEqual(self.cdn.disable_and_delete("E123"), "scheduled")

        update = self.cloudfront.update_distribution.call_args.kwargs
        self.assertFalse(update["DistributionConfig"]["Enabled"])
        self.cloudfront.delete_distribution.assert_called_once_with(Id="E123", IfMatch="ETAG2")

    def test_delete_already_disabled(self):
        self.cloudfront.get_distribution_config.return_value = {
            "ETag": "ETAG1",
            "DistributionConfig": {"Enabled": False},
        }
        self.assertEqual(self.cdn.disable_and_delete("E123"), "deleted")
        self.cloudfront.update_distribution.assert_not_called()

    def test_delete_missing(self):
        self.cloudfront.get_distribution_config.side_effect = client_error("NoSuchDistribution")
        self.assertEqual(self.cdn.disable_and_delete("E123"), "missing")

    def test_delete_error(self):
        self.cloudfront.get_distribution_config.return_value = {"ETag": "E", "DistributionConfig": {"Enabled": False}}
        self.cloudfront.delete_distribution.side_effect = client_error("AccessDenied")
        with self.assertRaises(ExternalAPIError):
            self.cdn.disable_and_delete("E123")


if __name__ == "__main__":
    unittest.main()
