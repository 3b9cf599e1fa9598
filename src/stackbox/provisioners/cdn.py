import logging
import time
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from stackbox.models import DistributionRef
from stackbox.naming import ResourceNames
from stackbox.provisioners.base import api_error, error_code, find_or_create, provider_call

logger = logging.getLogger(__name__)

CACHED_METHODS = ["GET", "HEAD"]
ALLOWED_METHODS = ["GET", "HEAD", "OPTIONS", "PUT", "POST", "PATCH", "DELETE"]


def _items(values: List[Any]) -> Dict[str, Any]:
    return {"Quantity": len(values), "Items": values}


class CdnProvisioner:
    def __init__(self, cloudfront_client, prefix: str = "stackbox", domain: str = "stackbox.io"):
        self.client = cloudfront_client
        self.prefix = prefix
        self.domain = domain

    def _names(self, tenant_id: str) -> ResourceNames:
        return ResourceNames(tenant_id, self.prefix, self.domain)

    def find_distribution(self, comment: str) -> Optional[Dict[str, Any]]:
        paginator = self.client.get_paginator("list_distributions")
        with provider_call("ListDistributions"):
            for page in paginator.paginate():
                for summary in page.get("DistributionList", {}).get("Items", []):
                    if summary.get("Comment") == comment:
                        return summary
        return None

    def build_config(self, names: ResourceNames, origin_domain: str, certificate_arn: Optional[str]) -> Dict[str, Any]:
        origin_policy = "https-only" if certificate_arn else "http-only"
        config: Dict[str, Any] = {
            "CallerReference": names.caller_reference,
            "Comment": names.distribution_comment,
            "Enabled": True,
            "PriceClass": "PriceClass_100",
            "HttpVersion": "http2",
            "IsIPV6Enabled": True,
            "Origins": _items([{
                "Id": names.origin_id,
                "DomainName": origin_domain,
                "CustomOriginConfig": {
                    "HTTPPort": 80,
                    "HTTPSPort": 443,
                    "OriginProtocolPolicy": origin_policy,
                    "OriginSslProtocols": _items(["TLSv1.2"]),
                },
            }]),
            "DefaultCacheBehavior": {
                "TargetOriginId": names.origin_id,
                "ViewerProtocolPolicy": "https-only",
                "AllowedMethods": {
                    **_items(ALLOWED_METHODS),
                    "CachedMethods": _items(CACHED_METHODS),
                },
                "Compress": True,
                "ForwardedValues": {
                    "QueryString": True,
                    "Cookies": {"Forward": "all"},
                    "Headers": _items(["Host"]),
                },
                "MinTTL": 0,
                "DefaultTTL": 86400,
                "MaxTTL": 31536000,
            },
        }
        if certificate_arn:
            config["Aliases"] = _items([names.subdomain])
            config["ViewerCertificate"] = {
                "ACMCertificateArn": certificate_arn,
                "SSLSupportMethod": "sni-only",
                "MinimumProtocolVersion": "TLSv1.2_2021",
            }
        else:
            config["Aliases"] = _items([])
            config["ViewerCertificate"] = {"CloudFrontDefaultCertificate": True}
        return config

    def create_distribution(
        self, tenant_id: str, origin_domain: str, certificate_arn: Optional[str] = None
    ) -> DistributionRef:
        names = self._names(tenant_id)

        def create() -> Dict[str, Any]:
            response = self.client.create_distribution_with_tags(
                DistributionConfigWithTags={
                    "DistributionConfig": self.build_config(names, origin_domain, certificate_arn),
                    "Tags": {"Items": names.tags()},
                }
            )
            return response["Distribution"]

        with provider_call("CreateDistribution"):
            result = find_or_create(
                lambda: self.find_distribution(names.distribution_comment),
                create,
                duplicate_codes=["DistributionAlreadyExists"],
                resource=f"distribution for {tenant_id}",
            )
        return self._to_ref(result.value)

    def update_distribution(self, distribution_id: str, **changes: Any) -> DistributionRef:
        """Apply top-level config changes, guarded by the current ETag."""
        with provider_call("GetDistributionConfig"):
            response = self.client.get_distribution_config(Id=distribution_id)
        config = response["DistributionConfig"]
        config.update(changes)
        with provider_call("UpdateDistribution"):
            updated = self.client.update_distribution(
                Id=distribution_id,
                IfMatch=response["ETag"],
                DistributionConfig=config,
            )
        logger.info("Updated distribution %s", distribution_id)
        return self._to_ref(updated["Distribution"])

    def invalidate(self, distribution_id: str, paths: Optional[List[str]] = None) -> str:
        paths = paths or ["/*"]
        with provider_call("CreateInvalidation"):
            response = self.client.create_invalidation(
                DistributionId=distribution_id,
                InvalidationBatch={
                    "Paths": _items(paths),
                    "CallerReference": f"{self.prefix}-{int(time.time() * 1000)}",
                },
            )
        invalidation_id = response["Invalidation"]["Id"]
        logger.info("Created invalidation %s for %s", invalidation_id, distribution_id)
        return invalidation_id

    def disable_and_delete(self, distribution_id: str) -> str:
        """Returns "deleted", "scheduled" (disable still propagating) or "missing"."""
        try:
            response = self.client.get_distribution_config(Id=distribution_id)
        except ClientError as e:
            if error_code(e) == "NoSuchDistribution":
                return "missing"
            raise api_error(e, "GetDistributionConfig") from e

        etag = response["ETag"]
        config = response["DistributionConfig"]
        if config.get("Enabled"):
            config["Enabled"] = False
            with provider_call("UpdateDistribution"):
                etag = self.client.update_distribution(
                    Id=distribution_id, IfMatch=etag, DistributionConfig=config
                )["ETag"]
            logger.info("Disabled distribution %s", distribution_id)

        try:
            self.client.delete_distribution(Id=distribution_id, IfMatch=etag)
        except ClientError as e:
            if error_code(e) == "DistributionNotDisabled":
                logger.info("Distribution %s is still disabling, delete scheduled", distribution_id)
                return "scheduled"
            raise api_error(e, "DeleteDistribution") from e
        logger.info("Deleted distribution %s", distribution_id)
        return "deleted"

    @staticmethod
    def _to_ref(distribution: Dict[str, Any]) -> DistributionRef:
        config = distribution.get("DistributionConfig", distribution)
        aliases = config.get("Aliases", {}).get("Items", [])
        return DistributionRef(
            distribution_id=distribution["Id"],
            domain_name=distribution["DomainName"],
            arn=distribution.get("ARN"),
            status=distribution.get("Status"),
            aliases=aliases,
        )
