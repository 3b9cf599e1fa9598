import unittest
from unittest.mock import MagicMock
import boto3
from moto import mock_aws
from stackbox.errors import ConfigValidationError
from stackbox.provisioners.network import NetworkResolver


@mock_aws
class TestNetworkResolver(unittest.TestCase):
    def setUp(self):
        self.ec2 = boto3.client("ec2", region_name="us-east-1")
        self.vpc = self.ec2.create_vpc(CidrBlock="10.20.0.0/16")["Vpc"]
        self.network = NetworkResolver(self.ec2, prefix="stackbox")
        self.network._vpc = self.vpc

    def test_web_security_group_is_created_once(self):
        first = self.network.ensure_web_security_group()
        second = self.network.ensure_web_security_group()
        self.assertEqual(first, second)

        groups = self.ec2.describe_security_groups(
            Filters=[{"Name": "group-name", "Values": ["stackbox-web-sg"]}]
        )["SecurityGroups"]
        self.assertEqual(len(groups), 1)
        ports = sorted(p["FromPort"] for p in groups[0]["IpPermissions"])
        self.assertEqual(ports, [80, 443])

    def test_database_group_admits_web_tier(self):
        db_group = self.network.ensure_database_security_group(3306)
        web_group = self.network.find_security_group("stackbox-web-sg", self.vpc["VpcId"])

        group = self.ec2.describe_security_groups(GroupIds=[db_group])["SecurityGroups"][0]
        permission = group["IpPermissions"][0]
        self.assertEqual(permission["FromPort"], 3306)
        self.assertEqual(permission["UserIdGroupPairs"][0]["GroupId"], web_group)


class TestSubnetLookup(unittest.TestCase):
    def test_missing_default_vpc(self):
        ec2 = MagicMock()
        ec2.describe_vpcs.return_value = {"Vpcs": []}
        with self.assertRaises(ConfigValidationError):
            NetworkResolver(ec2).default_vpc()

    def test_default_vpc_is_cached(self):
        ec2 = MagicMock()
        ec2.describe_vpcs.return_value = {"Vpcs": [{"VpcId": "vpc-1"}]}
        network = NetworkResolver(ec2)
        network.default_vpc()
        self.assertEqual(network.default_vpc()["VpcId"], "vpc-1")
        ec2.describe_vpcs.assert_called_once()

    def test_public_subnets_one_per_zone(self):
        ec2 = MagicMock()
        ec2.describe_vpcs.return_value = {"Vpcs": [{"VpcId": "vpc-1"}]}
        ec2.describe_subnets.return_value = {"Subnets": [
            {"SubnetId": "subnet-c", "AvailabilityZone": "us-east-1b"},
            {"SubnetId": "subnet-a", "AvailabilityZone": "us-east-1a"},
            {"SubnetId": "subnet-b", "AvailabilityZone": "us-east-1a"},
        ]}

        self.assertEqual(NetworkResolver(ec2).public_subnet_ids(minimum=2), ["subnet-a", "subnet-c"])
        filters = ec2.describe_subnets.call_args.kwargs["Filters"]
        self.assertIn({"Name": "map-public-ip-on-launch", "Values": ["true"]}, filters)

    def test_single_zone_is_not_enough(self):
        ec2 = MagicMock()
        ec2.describe_vpcs.return_value = {"Vpcs": [{"VpcId": "vpc-1"}]}
        ec2.describe_subnets.return_value = {"Subnets": [
            {"SubnetId": "subnet-a", "AvailabilityZone": "us-east-1a"},
            {"SubnetId": "subnet-b", "AvailabilityZone": "us-east-1a"},
        ]}
        with self.assertRaises(ConfigValidationError):
            NetworkResolver(ec2).public_subnet_ids(minimum=2)


if __name__ == "__main__":
    unittest.main()
