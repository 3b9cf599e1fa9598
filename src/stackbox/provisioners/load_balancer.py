import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from stackbox.errors import ExternalAPIError
from stackbox.models import LoadBalancerRef, ServiceRoute, TargetRegistration
from stackbox.naming import ResourceNames
from stackbox.provisioners.base import Outcome, Provisioned, api_error, error_code, find_or_create, provider_call

logger = logging.getLogger(__name__)

TLS_POLICY = "ELBSecurityPolicy-TLS-1-2-2017-01"
HEALTH_CHECK_PATH = "/health"

TARGET_GROUP_ATTRIBUTES = [
    {"Key": "stickiness.enabled", "Value": "true"},
    {"Key": "stickiness.type", "Value": "lb_cookie"},
    {"Key": "stickiness.lb_cookie.duration_seconds", "Value": "86400"},
    {"Key": "deregistration_delay.timeout_seconds", "Value": "30"},
    {"Key": "slow_start.duration_seconds", "Value": "60"},
]


def path_patterns(path: str) -> List[str]:
    return [f"/{path}", f"/{path}/*"]


class LoadBalancerProvisioner:
    def __init__(self, elbv2_client, network, prefix: str = "stackbox", domain: str = "stackbox.io"):
        self.client = elbv2_client
        self.network = network
        self.prefix = prefix
        self.domain = domain

    def _names(self, tenant_id: str) -> ResourceNames:
        return ResourceNames(tenant_id, self.prefix, self.domain)

    def create_load_balancer(self, tenant_id: str, certificate_arn: Optional[str]) -> LoadBalancerRef:
        """Balancer, target group and listeners for one tenant.

        Without a certificate (SSL bypass) the HTTP listener forwards to the
        target group instead of redirecting, and no HTTPS listener is created.
        If a step fails, the balancer and target group this call created are
        deleted before the error propagates.
        """
        names = self._names(tenant_id)

        # Raises before anything is created when the network is unusable
        subnet_ids = self.network.public_subnet_ids(minimum=2)
        vpc_id = self.network.default_vpc()["VpcId"]
        security_group = self.network.ensure_web_security_group()

        load_balancer = self.ensure_load_balancer(names, subnet_ids, security_group)
        lb_arn = load_balancer.value["LoadBalancerArn"]
        target_group = None
        try:
            target_group = self.ensure_target_group(names.target_group, names, vpc_id)
            tg_arn = target_group.value["TargetGroupArn"]

            listeners = self.listeners_by_port(lb_arn)
            https_arn = None
            if certificate_arn:
                https_arn = listeners.get(443) or self.create_https_listener(lb_arn, tg_arn, certificate_arn)
                http_arn = listeners.get(80) or self.create_redirect_listener(lb_arn)
            else:
                logger.warning("No certificate for %s, serving plain HTTP", tenant_id)
                http_arn = listeners.get(80) or self.create_forward_listener(lb_arn, tg_arn)
        except Exception:
            self._discard(
                lb_arn if load_balancer.created else None,
                target_group.value["TargetGroupArn"] if target_group is not None and target_group.created else None,
            )
            raise

        return LoadBalancerRef(
            load_balancer_arn=lb_arn,
            dns_name=load_balancer.value["DNSName"],
            target_group_arn=tg_arn,
            http_listener_arn=http_arn,
            https_listener_arn=https_arn,
            health_check_path=HEALTH_CHECK_PATH,
        )

    def _discard(self, load_balancer_arn: Optional[str], target_group_arn: Optional[str]):
        try:
            if load_balancer_arn:
                logger.warning("Removing load balancer %s after a failed create", load_balancer_arn)
                self._delete_balancer(load_balancer_arn)
            if target_group_arn:
                self._delete_target_group(target_group_arn)
        except ExternalAPIError as e:
            logger.error("Could not remove partially created load balancer: %s", e)

    def find_load_balancer(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.describe_load_balancers(Names=[name])
        except ClientError as e:
            if error_code(e) == "LoadBalancerNotFound":
                return None
            raise api_error(e, "DescribeLoadBalancers") from e
        balancers = response.get("LoadBalancers", [])
        return balancers[0] if balancers else None

    def ensure_load_balancer(
        self, names: ResourceNames, subnet_ids: List[str], security_group: str
    ) -> Provisioned[Dict[str, Any]]:
        def create() -> Dict[str, Any]:
            response = self.client.create_load_balancer(
                Name=names.load_balancer,
                Subnets=subnet_ids,
                SecurityGroups=[security_group],
                Scheme="internet-facing",
                Type="application",
                IpAddressType="ipv4",
                Tags=names.tags(Name=names.load_balancer),
            )
            return response["LoadBalancers"][0]

        with provider_call("CreateLoadBalancer"):
            return find_or_create(
                lambda: self.find_load_balancer(names.load_balancer),
                create,
                duplicate_codes=["DuplicateLoadBalancerName"],
                resource=f"load balancer {names.load_balancer}",
            )

    def find_target_group(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.describe_target_groups(Names=[name])
        except ClientError as e:
            if error_code(e) == "TargetGroupNotFound":
                return None
            raise api_error(e, "DescribeTargetGroups") from e
        groups = response.get("TargetGroups", [])
        return groups[0] if groups else None

    def ensure_target_group(
        self, name: str, names: ResourceNames, vpc_id: str, health_check_path: str = HEALTH_CHECK_PATH
    ) -> Provisioned[Dict[str, Any]]:
        def create() -> Dict[str, Any]:
            response = self.client.create_target_group(
                Name=name,
                Protocol="HTTP",
                Port=80,
                VpcId=vpc_id,
                TargetType="instance",
                HealthCheckEnabled=True,
                HealthCheckProtocol="HTTP",
                HealthCheckPath=health_check_path,
                HealthCheckIntervalSeconds=30,
                HealthCheckTimeoutSeconds=5,
                HealthyThresholdCount=2,
                UnhealthyThresholdCount=5,
                Matcher={"HttpCode": "200,302"},
                Tags=names.tags(Name=name),
            )
            return response["TargetGroups"][0]

        with provider_call("CreateTargetGroup"):
            result = find_or_create(
                lambda: self.find_target_group(name),
                create,
                duplicate_codes=["DuplicateTargetGroupName"],
                resource=f"target group {name}",
            )
            self.client.modify_target_group_attributes(
                TargetGroupArn=result.value["TargetGroupArn"],
                Attributes=TARGET_GROUP_ATTRIBUTES,
            )
        return result

    def listeners_by_port(self, load_balancer_arn: str) -> Dict[int, str]:
        with provider_call("DescribeListeners"):
            response = self.client.describe_listeners(LoadBalancerArn=load_balancer_arn)
        return {listener["Port"]: listener["ListenerArn"] for listener in response.get("Listeners", [])}

    def create_https_listener(self, load_balancer_arn: str, target_group_arn: str, certificate_arn: str) -> str:
        with provider_call("CreateListener"):
            response = self.client.create_listener(
                LoadBalancerArn=load_balancer_arn,
                Protocol="HTTPS",
                Port=443,
                SslPolicy=TLS_POLICY,
                Certificates=[{"CertificateArn": certificate_arn}],
                DefaultActions=[{"Type": "forward", "TargetGroupArn": target_group_arn}],
            )
        logger.info("Created HTTPS listener on %s", load_balancer_arn)
        return response["Listeners"][0]["ListenerArn"]

    def create_redirect_listener(self, load_balancer_arn: str) -> str:
        with provider_call("CreateListener"):
            response = self.client.create_listener(
                LoadBalancerArn=load_balancer_arn,
                Protocol="HTTP",
                Port=80,
                DefaultActions=[{
                    "Type": "redirect",
                    "RedirectConfig": {"Protocol": "HTTPS", "Port": "443", "StatusCode": "HTTP_301"},
                }],
            )
        logger.info("Created HTTP->HTTPS redirect listener on %s", load_balancer_arn)
        return response["Listeners"][0]["ListenerArn"]

    def create_forward_listener(self, load_balancer_arn: str, target_group_arn: str) -> str:
        with provider_call("CreateListener"):
            response = self.client.create_listener(
                LoadBalancerArn=load_balancer_arn,
                Protocol="HTTP",
                Port=80,
                DefaultActions=[{"Type": "forward", "TargetGroupArn": target_group_arn}],
            )
        return response["Listeners"][0]["ListenerArn"]

    # Targets

    def register_targets(self, target_group_arn: str, instance_ids: List[str], port: int = 80) -> TargetRegistration:
        if instance_ids:
            with provider_call("RegisterTargets"):
                self.client.register_targets(
                    TargetGroupArn=target_group_arn,
                    Targets=[{"Id": instance_id, "Port": port} for instance_id in instance_ids],
                )
            logger.info("Registered %d target(s) with %s", len(instance_ids), target_group_arn)
        else:
            logger.info("No compute targets yet for %s", target_group_arn)
        return TargetRegistration(target_group_arn=target_group_arn, instance_ids=list(instance_ids), port=port)

    def register_target(self, target_group_arn: str, instance_id: str, port: int = 80) -> TargetRegistration:
        return self.register_targets(target_group_arn, [instance_id], port)

    def deregister_targets(self, registration: TargetRegistration) -> int:
        if not registration.instance_ids:
            return 0
        try:
            self.client.deregister_targets(
                TargetGroupArn=registration.target_group_arn,
                Targets=[{"Id": i, "Port": registration.port} for i in registration.instance_ids],
            )
        except ClientError as e:
            if error_code(e) == "TargetGroupNotFound":
                return 0
            raise api_error(e, "DeregisterTargets") from e
        return len(registration.instance_ids)

    def describe_target_health(self, target_group_arn: str) -> Dict[str, Any]:
        with provider_call("DescribeTargetHealth"):
            response = self.client.describe_target_health(TargetGroupArn=target_group_arn)
        targets = [
            {
                "id": d["Target"]["Id"],
                "port": d["Target"].get("Port"),
                "state": d.get("TargetHealth", {}).get("State", "unknown"),
            }
            for d in response.get("TargetHealthDescriptions", [])
        ]
        healthy = sum(1 for t in targets if t["state"] == "healthy")
        return {"targets": targets, "total": len(targets), "healthy": healthy, "unhealthy": len(targets) - healthy}

    # Path routing

    def find_rule(self, listener_arn: str, path: str) -> Optional[Dict[str, Any]]:
        with provider_call("DescribeRules"):
            response = self.client.describe_rules(ListenerArn=listener_arn)
        pattern = path_patterns(path)[0]
        for rule in response.get("Rules", []):
            for condition in rule.get("Conditions", []):
                values = condition.get("PathPatternConfig", {}).get("Values") or condition.get("Values", [])
                if condition.get("Field") == "path-pattern" and pattern in values:
                    return rule
        return None

    def ensure_service_route(
        self, tenant_id: str, ref: LoadBalancerRef, service: str, path: str, priority: int
    ) -> Provisioned[ServiceRoute]:
        """Target group plus a path rule sending /<path> to one service.

        The rule goes on the HTTPS listener, or on the plain HTTP listener in
        SSL bypass. Reports CREATED when either resource is new.
        """
        names = self._names(tenant_id)
        vpc_id = self.network.default_vpc()["VpcId"]
        group_name = names.service_target_group(service)
        group = self.ensure_target_group(group_name, names, vpc_id, f"/{path}/")
        tg_arn = group.value["TargetGroupArn"]
        listener_arn = ref.https_listener_arn or ref.http_listener_arn

        def create() -> Dict[str, Any]:
            response = self.client.create_rule(
                ListenerArn=listener_arn,
                Priority=priority,
                Conditions=[{"Field": "path-pattern", "PathPatternConfig": {"Values": path_patterns(path)}}],
                Actions=[{"Type": "forward", "TargetGroupArn": tg_arn}],
                Tags=names.tags(Name=group_name),
            )
            return response["Rules"][0]

        try:
            with provider_call("CreateRule"):
                rule = find_or_create(
                    lambda: self.find_rule(listener_arn, path),
                    create,
                    duplicate_codes=["PriorityInUse"],
                    resource=f"/{path} rule on {listener_arn}",
                )
        except Exception:
            if group.created:
                self._discard(None, tg_arn)
            raise

        route = ServiceRoute(path=path, target_group_arn=tg_arn, rule_arn=rule.value["RuleArn"])
        outcome = Outcome.CREATED if group.created or rule.created else Outcome.EXISTING
        return Provisioned(route, outcome)

    def remove_service_route(self, route: ServiceRoute):
        try:
            self.client.delete_rule(RuleArn=route.rule_arn)
        except ClientError as e:
            if error_code(e) != "RuleNotFound":
                raise api_error(e, "DeleteRule") from e
        self._delete_target_group(route.target_group_arn)
        logger.info("Removed route /%s", route.path)

    # Teardown

    def delete_load_balancer(self, ref: LoadBalancerRef):
        listeners = [arn for arn in (ref.https_listener_arn, ref.http_listener_arn) if arn]
        for listener_arn in listeners:
            try:
                self.client.delete_listener(ListenerArn=listener_arn)
            except ClientError as e:
                if error_code(e) != "ListenerNotFound":
                    raise api_error(e, "DeleteListener") from e

        self._delete_balancer(ref.load_balancer_arn)
        self._delete_target_group(ref.target_group_arn)
        logger.info("Deleted load balancer %s", ref.load_balancer_arn)

    def _delete_balancer(self, load_balancer_arn: str):
        with provider_call("DeleteLoadBalancer"):
            self.client.delete_load_balancer(LoadBalancerArn=load_balancer_arn)
            # Target groups stay in use until the balancer is fully gone
            waiter = self.client.get_waiter("load_balancers_deleted")
            waiter.wait(LoadBalancerArns=[load_balancer_arn], WaiterConfig={"Delay": 15, "MaxAttempts": 40})

    def _delete_target_group(self, target_group_arn: str):
        try:
            self.client.delete_target_group(TargetGroupArn=target_group_arn)
        except ClientError as e:
            if error_code(e) != "TargetGroupNotFound":
                raise api_error(e, "DeleteTargetGroup") from e
