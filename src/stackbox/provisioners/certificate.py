import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from stackbox.errors import ResourceFailedError
from stackbox.models import CertificateResult, ValidationRecord
from stackbox.polling import RunContext, poll_until
from stackbox.provisioners.base import provider_call

logger = logging.getLogger(__name__)

REUSABLE_STATUSES = ["ISSUED", "PENDING_VALIDATION"]


class CertificateProvisioner:
    """Wildcard certificate for the primary domain, validated through DNS."""

    def __init__(
        self,
        acm_client,
        dns,
        poll_interval: float = 30,
        timeout: float = 1800,
        log_every: float = 120,
        clock=None,
    ):
        self.client = acm_client
        self.dns = dns
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.log_every = log_every
        self._now = clock or (lambda: datetime.now(timezone.utc))

    def ensure_certificate(self, domain: str, context: Optional[RunContext] = None) -> CertificateResult:
        existing = self.find_certificate(domain)
        if existing is not None and existing["Status"] == "ISSUED":
            logger.info("Reusing issued certificate for %s: %s", domain, existing["CertificateArn"])
            return CertificateResult(
                certificate_arn=existing["CertificateArn"],
                domain=domain,
                status="ISSUED",
                reused=True,
            )

        if existing is not None:
            arn = existing["CertificateArn"]
            reused = True
            logger.info("Certificate for %s is still pending validation: %s", domain, arn)
        else:
            arn = self.request_certificate(domain)
            reused = False

        records = self.get_validation_records(arn, context)
        self.publish_validation_records(records)
        certificate = self.wait_for_issuance(arn, context)
        return CertificateResult(
            certificate_arn=arn,
            domain=domain,
            status=certificate["Status"],
            reused=reused,
            validation_records=records,
        )

    def find_certificate(self, domain: str) -> Optional[Dict[str, Any]]:
        """Find a non-expired certificate covering `domain` and `*.domain`."""
        wildcard = f"*.{domain}"
        paginator = self.client.get_paginator("list_certificates")
        with provider_call("ListCertificates"):
            for page in paginator.paginate(CertificateStatuses=REUSABLE_STATUSES):
                for summary in page.get("CertificateSummaryList", []):
                    if summary.get("DomainName") not in (domain, wildcard):
                        continue
                    certificate = self.describe(summary["CertificateArn"])
                    if self._covers(certificate, domain, wildcard):
                        return certificate
        return None

    def _covers(self, certificate: Dict[str, Any], domain: str, wildcard: str) -> bool:
        if certificate.get("Status") not in REUSABLE_STATUSES:
            return False
        names = set(certificate.get("SubjectAlternativeNames", []))
        names.add(certificate.get("DomainName"))
        if not {domain, wildcard} <= names:
            return False
        not_after = certificate.get("NotAfter")
        return not_after is None or not_after > self._now()

    def request_certificate(self, domain: str) -> str:
        with provider_call("RequestCertificate"):
            response = self.client.request_certificate(
                DomainName=domain,
                SubjectAlternativeNames=[f"*.{domain}"],
                ValidationMethod="DNS",
                IdempotencyToken=re.sub(r"[^a-zA-Z0-9]", "", domain)[:32],
                Tags=[{"Key": "Name", "Value": f"{domain} wildcard"}],
            )
        arn = response["CertificateArn"]
        logger.info("Requested certificate for %s: %s", domain, arn)
        return arn

    def describe(self, arn: str) -> Dict[str, Any]:
        with provider_call("DescribeCertificate"):
            return self.client.describe_certificate(CertificateArn=arn)["Certificate"]

    def get_validation_records(self, arn: str, context: Optional[RunContext] = None) -> List[ValidationRecord]:
        # ACM fills in the challenge records a few seconds after the request
        def check() -> Optional[List[ValidationRecord]]:
            certificate = self.describe(arn)
            options = certificate.get("DomainValidationOptions", [])
            records = [self._to_record(option) for option in options]
            if records and all(r.is_complete for r in records):
                return records
            return None

        return poll_until(
            check,
            description=f"validation records for {arn}",
            interval=min(self.poll_interval, 5),
            timeout=self.timeout,
            log_every=self.log_every,
            context=context,
        )

    def publish_validation_records(self, records: List[ValidationRecord]):
        # The apex and wildcard share one challenge record
        published = set()
        for record in records:
            if record.validation_status == "SUCCESS":
                continue
            key = (record.record_name, record.record_type)
            if key in published:
                continue
            self.dns.upsert_record(record.record_name, record.record_type, record.record_value)
            published.add(key)
        logger.info("Published %d validation record(s)", len(published))

    def wait_for_issuance(self, arn: str, context: Optional[RunContext] = None) -> Dict[str, Any]:
        def check() -> Optional[Dict[str, Any]]:
            certificate = self.describe(arn)
            status = certificate.get("Status")
            if status == "ISSUED":
                logger.info("Certificate issued: %s", arn)
                return certificate
            if status in ("FAILED", "VALIDATION_TIMED_OUT", "REVOKED"):
                raise ResourceFailedError(f"certificate {arn}", status)
            return None

        return poll_until(
            check,
            description=f"certificate {arn}",
            interval=self.poll_interval,
            timeout=self.timeout,
            log_every=self.log_every,
            context=context,
        )

    @staticmethod
    def _to_record(option: Dict[str, Any]) -> ValidationRecord:
        resource = option.get("ResourceRecord") or {}
        return ValidationRecord(
            domain=option["DomainName"],
            record_name=resource.get("Name"),
            record_type=resource.get("Type"),
            record_value=resource.get("Value"),
            validation_status=option.get("ValidationStatus"),
        )
