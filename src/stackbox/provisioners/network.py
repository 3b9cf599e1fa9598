import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from stackbox.errors import ConfigValidationError
from stackbox.provisioners.base import api_error, error_code, find_or_create, provider_call

logger = logging.getLogger(__name__)


class NetworkResolver:
    """Default-network lookups and the shared, tenant-independent security groups."""

    def __init__(self, ec2_client, prefix: str = "stackbox"):
        self.client = ec2_client
        self.prefix = prefix
        self._vpc: Optional[Dict[str, Any]] = None

    @property
    def web_security_group_name(self) -> str:
        return f"{self.prefix}-web-sg"

    @property
    def database_security_group_name(self) -> str:
        return f"{self.prefix}-rds-sg"

    def default_vpc(self) -> Dict[str, Any]:
        if self._vpc is None:
            with provider_call("DescribeVpcs"):
                response = self.client.describe_vpcs(Filters=[{"Name": "is-default", "Values": ["true"]}])
            vpcs = response.get("Vpcs", [])
            if not vpcs:
                raise ConfigValidationError("No default VPC found")
            self._vpc = vpcs[0]
        return self._vpc

    def subnets(self, vpc_id: str, public_only: bool = False) -> List[Dict[str, Any]]:
        filters = [{"Name": "vpc-id", "Values": [vpc_id]}]
        if public_only:
            filters.append({"Name": "map-public-ip-on-launch", "Values": ["true"]})
        with provider_call("DescribeSubnets"):
            response = self.client.describe_subnets(Filters=filters)
        subnets = response.get("Subnets", [])
        return sorted(subnets, key=lambda s: (s.get("AvailabilityZone", ""), s["SubnetId"]))

    def public_subnet_ids(self, minimum: int = 2) -> List[str]:
        vpc_id = self.default_vpc()["VpcId"]
        subnets = self.subnets(vpc_id, public_only=True)
        # One subnet per availability zone
        by_zone: Dict[str, str] = {}
        for subnet in subnets:
            by_zone.setdefault(subnet.get("AvailabilityZone", subnet["SubnetId"]), subnet["SubnetId"])
        if len(by_zone) < minimum:
            raise ConfigValidationError(
                f"At least {minimum} public subnets in distinct zones are required, found {len(by_zone)}"
            )
        return list(by_zone.values())

    def find_security_group(self, name: str, vpc_id: str) -> Optional[str]:
        with provider_call("DescribeSecurityGroups"):
            response = self.client.describe_security_groups(
                Filters=[
                    {"Name": "group-name", "Values": [name]},
                    {"Name": "vpc-id", "Values": [vpc_id]},
                ]
            )
        groups = response.get("SecurityGroups", [])
        return groups[0]["GroupId"] if groups else None

    def ensure_security_group(self, name: str, description: str, ingress: List[Dict[str, Any]]) -> str:
        vpc_id = self.default_vpc()["VpcId"]

        def create() -> str:
            response = self.client.create_security_group(
                GroupName=name,
                Description=description,
                VpcId=vpc_id,
                TagSpecifications=[{
                    "ResourceType": "security-group",
                    "Tags": [
                        {"Key": "Name", "Value": name},
                        {"Key": "Project", "Value": self.prefix},
                    ],
                }],
            )
            return response["GroupId"]

        with provider_call("CreateSecurityGroup"):
            result = find_or_create(
                lambda: self.find_security_group(name, vpc_id),
                create,
                duplicate_codes=["InvalidGroup.Duplicate"],
                resource=f"security group {name}",
            )
        self.authorize_ingress(result.value, ingress)
        return result.value

    def authorize_ingress(self, group_id: str, permissions: List[Dict[str, Any]]):
        if not permissions:
            return
        try:
            self.client.authorize_security_group_ingress(GroupId=group_id, IpPermissions=permissions)
            logger.info("Configured ingress rules on %s", group_id)
        except ClientError as e:
            if error_code(e) != "InvalidPermission.Duplicate":
                raise api_error(e, "AuthorizeSecurityGroupIngress") from e
            logger.debug("Ingress rules already present on %s", group_id)

    def ensure_web_security_group(self) -> str:
        return self.ensure_security_group(
            self.web_security_group_name,
            "StackBox public web traffic",
            [
                {"IpProtocol": "tcp", "FromPort": port, "ToPort": port, "IpRanges": [{"CidrIp": "0.0.0.0/0"}]}
                for port in (80, 443)
            ],
        )

    def ensure_database_security_group(self, port: int = 3306) -> str:
        web_group = self.ensure_web_security_group()
        return self.ensure_security_group(
            self.database_security_group_name,
            "StackBox database access from web tier",
            [{
                "IpProtocol": "tcp",
                "FromPort": port,
                "ToPort": port,
                "UserIdGroupPairs": [{"GroupId": web_group, "Description": "Allow access from web tier"}],
            }],
        )
