import logging
from typing import Dict, Optional

from stackbox.errors import ConfigValidationError
from stackbox.provisioners.base import provider_call

logger = logging.getLogger(__name__)


def _absolute(name: str) -> str:
    return name if name.endswith(".") else f"{name}."


class DnsRecordManager:
    """Upserts and removes records in the hosted zone that owns a name."""

    def __init__(self, route53_client, ttl: int = 300):
        self.client = route53_client
        self.ttl = ttl
        self._zones: Dict[str, str] = {}

    def hosted_zone_id(self, name: str) -> str:
        """Find the public zone whose name is the longest suffix of `name`.

        Public zones are listed once and cached; a miss lists them again.
        """
        fqdn = _absolute(name.lower())
        zone_id = self._longest_match(fqdn)
        if zone_id is None:
            self._load_zones()
            zone_id = self._longest_match(fqdn)
        if zone_id is None:
            raise ConfigValidationError(f"No hosted zone found for {name}")
        return zone_id

    def _longest_match(self, fqdn: str) -> Optional[str]:
        matches = [zone for zone in self._zones if fqdn == zone or fqdn.endswith("." + zone)]
        if not matches:
            return None
        return self._zones[max(matches, key=len)]

    def _load_zones(self):
        zones: Dict[str, str] = {}
        paginator = self.client.get_paginator("list_hosted_zones")
        with provider_call("ListHostedZones"):
            for page in paginator.paginate():
                for zone in page.get("HostedZones", []):
                    if zone.get("Config", {}).get("PrivateZone"):
                        continue
                    zones[zone["Name"].lower()] = zone["Id"].split("/")[-1]
        self._zones = zones

    def upsert_record(self, name: str, record_type: str, value: str, ttl: Optional[int] = None) -> str:
        zone_id = self.hosted_zone_id(name)
        with provider_call("ChangeResourceRecordSets"):
            response = self.client.change_resource_record_sets(
                HostedZoneId=zone_id,
                ChangeBatch={
                    "Comment": f"StackBox upsert {name}",
                    "Changes": [{
                        "Action": "UPSERT",
                        "ResourceRecordSet": {
                            "Name": _absolute(name),
                            "Type": record_type,
                            "TTL": self.ttl if ttl is None else ttl,
                            "ResourceRecords": [{"Value": value}],
                        },
                    }],
                },
            )
        change_id = response["ChangeInfo"]["Id"]
        logger.info("Upserted %s record %s -> %s (%s)", record_type, name, value, change_id)
        return change_id

    def find_record(self, name: str, record_type: str) -> Optional[Dict]:
        zone_id = self.hosted_zone_id(name)
        fqdn = _absolute(name.lower())
        with provider_call("ListResourceRecordSets"):
            response = self.client.list_resource_record_sets(
                HostedZoneId=zone_id,
                StartRecordName=fqdn,
                StartRecordType=record_type,
                MaxItems="1",
            )
        for record in response.get("ResourceRecordSets", []):
            if record["Name"].lower() == fqdn and record["Type"] == record_type:
                return record
        return None

    def remove_record(self, name: str, record_type: str) -> Optional[str]:
        """Delete a record. Returns None when there was nothing to delete."""
        record = self.find_record(name, record_type)
        if record is None:
            logger.info("No %s record for %s, nothing to remove", record_type, name)
            return None
        zone_id = self.hosted_zone_id(name)
        with provider_call("ChangeResourceRecordSets"):
            response = self.client.change_resource_record_sets(
                HostedZoneId=zone_id,
                ChangeBatch={"Changes": [{"Action": "DELETE", "ResourceRecordSet": record}]},
            )
        logger.info("Removed %s record %s", record_type, name)
        return response["ChangeInfo"]["Id"]
