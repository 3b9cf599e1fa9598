from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class DatabaseInstance(BaseModel):
    identifier: str
    endpoint: str
    port: int
    engine: str
    instance_class: str
    allocated_storage: int
    storage_type: str
    multi_az: bool
    backup_retention_period: int
    deletion_protection: bool
    status: str = "available"


class DatabaseUpgrade(BaseModel):
    identifier: str
    snapshot_id: str
    instance_class: str
    allocated_storage: int
    multi_az: bool
    backup_retention_period: int
    status: str = "pending"
    apply_at: str = "next maintenance window"


class SecretRef(BaseModel):
    """Opaque pointer into the secret store. Never carries the secret value."""

    name: str
    arn: str


class SecretHandles(BaseModel):
    database: SecretRef
    integrations: Optional[SecretRef] = None


class LoadBalancerRef(BaseModel):
    load_balancer_arn: str
    dns_name: str
    target_group_arn: str
    http_listener_arn: str
    https_listener_arn: Optional[str] = None
    health_check_path: str = "/health"


class DistributionRef(BaseModel):
    distribution_id: str
    domain_name: str
    arn: Optional[str] = None
    status: Optional[str] = None
    aliases: List[str] = Field(default_factory=list)


class DnsRecordRef(BaseModel):
    name: str
    record_type: str
    value: str
    change_id: Optional[str] = None


class TargetRegistration(BaseModel):
    target_group_arn: str
    instance_ids: List[str] = Field(default_factory=list)
    port: int = 80

    @property
    def health_status(self) -> str:
        return "registered" if self.instance_ids else "awaiting_targets"


class ServiceRoute(BaseModel):
    """Path rule on the tenant listener forwarding to one service's target group."""

    path: str
    target_group_arn: str
    rule_arn: str


class ContainerDeployment(BaseModel):
    cluster: str
    services: Dict[str, str] = Field(default_factory=dict)
    endpoints: Dict[str, str] = Field(default_factory=dict)
    routes: Dict[str, ServiceRoute] = Field(default_factory=dict)
