import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from stackbox.errors import ExternalAPIError
from stackbox.models import ContainerDeployment, CredentialBundle, LoadBalancerRef, SecretRef, TenantConfig
from stackbox.naming import ResourceNames
from stackbox.provisioners.base import Outcome, Provisioned, api_error, error_code, provider_call

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppSpec:
    image: str
    port: int
    path: str
    cpu: int = 256
    memory: int = 512


APP_CATALOG: Dict[str, AppSpec] = {
    "website": AppSpec("nginx:stable", 80, ""),
    "crm": AppSpec("espocrm/espocrm:latest", 80, "crm", memory=1024),
    "file_portal": AppSpec("nextcloud:stable", 80, "files", memory=1024),
    "booking": AppSpec("calcom/cal.com:latest", 3000, "booking", memory=1024),
    "newsletter": AppSpec("mailtrain/mailtrain:latest", 3000, "newsletter"),
}


def enabled_services(tenant: TenantConfig) -> List[str]:
    features = tenant.features
    enabled = {
        "website": True,
        "crm": features.crm,
        "file_portal": features.file_portal,
        # Booking ships with every paid plan
        "booking": features.booking or not tenant.is_trial,
        "newsletter": features.newsletter,
    }
    return [service for service in APP_CATALOG if enabled[service]]


class ContainerWorkloadDeployer:
    """One ECS service per enabled application on the shared cluster.

    The website answers at the tenant root through the tenant target group.
    With a `routes` provider (the load balancer provisioner) every other
    application gets its own target group and a path rule, and its endpoint is
    published; without one, only the website is reachable.
    """

    def __init__(
        self,
        ecs_client,
        cluster: str = "stackbox-tenants",
        prefix: str = "stackbox",
        domain: str = "stackbox.io",
        routes=None,
    ):
        self.client = ecs_client
        self.cluster = cluster
        self.prefix = prefix
        self.domain = domain
        self.routes = routes

    def _names(self, tenant_id: str) -> ResourceNames:
        return ResourceNames(tenant_id, self.prefix, self.domain)

    def ensure_cluster(self) -> str:
        with provider_call("DescribeClusters"):
            response = self.client.describe_clusters(clusters=[self.cluster])
        for cluster in response.get("clusters", []):
            if cluster.get("status") == "ACTIVE":
                return cluster["clusterArn"]
        with provider_call("CreateCluster"):
            response = self.client.create_cluster(clusterName=self.cluster)
        logger.info("Created container cluster %s", self.cluster)
        return response["cluster"]["clusterArn"]

    def deploy_services(
        self,
        tenant: TenantConfig,
        credentials: CredentialBundle,
        database_secret: SecretRef,
        integrations_secret: Optional[SecretRef] = None,
        load_balancer: Optional[LoadBalancerRef] = None,
    ) -> ContainerDeployment:
        names = self._names(tenant.tenant_id)
        self.ensure_cluster()

        deployment = ContainerDeployment(cluster=self.cluster)
        created = ContainerDeployment(cluster=self.cluster)
        try:
            for service in enabled_services(tenant):
                spec = APP_CATALOG[service]
                target_group_arn = self._route(tenant.tenant_id, service, spec, load_balancer, deployment, created)
                task_definition = self.register_task_definition(
                    names, service, spec, credentials, database_secret, integrations_secret
                )
                result = self.ensure_service(names.container_family(service), task_definition, service, spec, target_group_arn)
                deployment.services[service] = result.value
                if result.created:
                    created.services[service] = result.value
                if target_group_arn:
                    deployment.endpoints[service] = f"https://{names.subdomain}/{spec.path}".rstrip("/")
        except Exception:
            if created.services or created.routes:
                logger.warning("Removing %d service(s) created before the failure", len(created.services))
                try:
                    self.remove_services(created)
                except ExternalAPIError as e:
                    logger.error("Could not remove partially deployed services: %s", e)
            raise

        logger.info("Deployed %d service(s) for tenant %s", len(deployment.services), tenant.tenant_id)
        return deployment

    def _route(
        self,
        tenant_id: str,
        service: str,
        spec: AppSpec,
        load_balancer: Optional[LoadBalancerRef],
        deployment: ContainerDeployment,
        created: ContainerDeployment,
    ) -> Optional[str]:
        if load_balancer is None:
            return None
        if not spec.path:
            return load_balancer.target_group_arn
        if self.routes is None:
            return None
        priority = 10 * (list(APP_CATALOG).index(service) + 1)
        route = self.routes.ensure_service_route(tenant_id, load_balancer, service, spec.path, priority)
        deployment.routes[service] = route.value
        if route.created:
            created.routes[service] = route.value
        return route.value.target_group_arn

    def container_definition(
        self,
        names: ResourceNames,
        service: str,
        spec: AppSpec,
        credentials: CredentialBundle,
        database_secret: SecretRef,
        integrations_secret: Optional[SecretRef],
    ) -> Dict[str, Any]:
        environment = {
            "TENANT_ID": names.tenant_id,
            "PUBLIC_URL": f"https://{names.subdomain}/{spec.path}".rstrip("/"),
            "DB_ENGINE": credentials.engine,
            "DB_HOST": credentials.host,
            "DB_PORT": str(credentials.port),
            "DB_NAME": credentials.database_for(service),
            "DB_USER": credentials.username,
        }
        secrets = [{"name": "DB_PASSWORD", "valueFrom": f"{database_secret.arn}:password::"}]
        if integrations_secret is not None:
            secrets.append({"name": "INTEGRATIONS_JSON", "valueFrom": integrations_secret.arn})
        return {
            "name": service,
            "image": spec.image,
            "essential": True,
            "cpu": spec.cpu,
            "memory": spec.memory,
            "portMappings": [{"containerPort": spec.port, "hostPort": 0, "protocol": "tcp"}],
            "environment": [{"name": k, "value": v} for k, v in sorted(environment.items())],
            "secrets": secrets,
        }

    def register_task_definition(
        self,
        names: ResourceNames,
        service: str,
        spec: AppSpec,
        credentials: CredentialBundle,
        database_secret: SecretRef,
        integrations_secret: Optional[SecretRef] = None,
    ) -> str:
        with provider_call("RegisterTaskDefinition"):
            response = self.client.register_task_definition(
                family=names.container_family(service),
                networkMode="bridge",
                requiresCompatibilities=["EC2"],
                containerDefinitions=[
                    self.container_definition(names, service, spec, credentials, database_secret, integrations_secret)
                ],
                tags=[{"key": t["Key"], "value": t["Value"]} for t in names.tags(Service=service)],
            )
        return response["taskDefinition"]["taskDefinitionArn"]

    def find_service(self, name: str) -> Optional[Dict[str, Any]]:
        with provider_call("DescribeServices"):
            response = self.client.describe_services(cluster=self.cluster, services=[name])
        for service in response.get("services", []):
            if service.get("status") == "ACTIVE":
                return service
        return None

    def ensure_service(
        self,
        name: str,
        task_definition: str,
        container: str,
        spec: AppSpec,
        target_group_arn: Optional[str] = None,
    ) -> Provisioned[str]:
        existing = self.find_service(name)
        if existing is not None:
            with provider_call("UpdateService"):
                self.client.update_service(cluster=self.cluster, service=name, taskDefinition=task_definition)
            logger.info("Updated existing service %s", name)
            return Provisioned(existing["serviceArn"], Outcome.EXISTING)

        params: Dict[str, Any] = {
            "cluster": self.cluster,
            "serviceName": name,
            "taskDefinition": task_definition,
            "desiredCount": 1,
            "launchType": "EC2",
        }
        if target_group_arn:
            params["loadBalancers"] = [{
                "targetGroupArn": target_group_arn,
                "containerName": container,
                "containerPort": spec.port,
            }]
        with provider_call("CreateService"):
            response = self.client.create_service(**params)
        logger.info("Created service %s", name)
        return Provisioned(response["service"]["serviceArn"], Outcome.CREATED)

    def describe_services(self, deployment: ContainerDeployment) -> Dict[str, Dict[str, Any]]:
        if not deployment.services:
            return {}
        with provider_call("DescribeServices"):
            response = self.client.describe_services(
                cluster=deployment.cluster, services=list(deployment.services.values())
            )
        by_arn = {s["serviceArn"]: s for s in response.get("services", [])}
        summary = {}
        for service, arn in deployment.services.items():
            found = by_arn.get(arn, {})
            summary[service] = {
                "status": found.get("status", "MISSING"),
                "desired": found.get("desiredCount", 0),
                "running": found.get("runningCount", 0),
            }
        return summary

    def cluster_instance_ids(self) -> List[str]:
        try:
            arns = self.client.list_container_instances(cluster=self.cluster).get("containerInstanceArns", [])
        except ClientError as e:
            if error_code(e) == "ClusterNotFoundException":
                return []
            raise api_error(e, "ListContainerInstances") from e
        if not arns:
            return []
        with provider_call("DescribeContainerInstances"):
            response = self.client.describe_container_instances(cluster=self.cluster, containerInstances=arns)
        return [i["ec2InstanceId"] for i in response.get("containerInstances", []) if i.get("ec2InstanceId")]

    def remove_services(self, deployment: ContainerDeployment) -> List[str]:
        removed = []
        for service, arn in deployment.services.items():
            try:
                self.client.update_service(cluster=deployment.cluster, service=arn, desiredCount=0)
                self.client.delete_service(cluster=deployment.cluster, service=arn, force=True)
            except ClientError as e:
                if error_code(e) in ("ServiceNotFoundException", "ServiceNotActiveException"):
                    logger.info("Service %s already gone", service)
                    continue
                raise api_error(e, "DeleteService") from e
            removed.append(service)
            logger.info("Removed service %s", service)
        # Rules and target groups can go once nothing is registered behind them
        if self.routes is not None:
            for route in deployment.routes.values():
                self.routes.remove_service_route(route)
        return removed
