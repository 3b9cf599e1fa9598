import re
import time
from typing import Dict, List, Optional, Set

# Hyphen-separated segments; RDS rejects "--" in identifiers
TENANT_ID_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
TENANT_ID_LENGTH = (3, 24)

SERVICE_DATABASE_PREFIXES = {
    "website": "web",
    "crm": "crm",
    "file_portal": "files",
    "booking": "booking",
    "newsletter": "news",
}


class ResourceNames:
    """Every tenant-scoped resource name is derived here and nowhere else.

    Each name embeds the tenant id as a delimited segment, so two different
    tenants can never produce the same name for any resource type.
    """

    def __init__(self, tenant_id: str, prefix: str = "stackbox", domain: str = "stackbox.io"):
        low, high = TENANT_ID_LENGTH
        if not (low <= len(tenant_id) <= high and TENANT_ID_PATTERN.match(tenant_id)):
            raise ValueError(f"Invalid tenant id: {tenant_id!r}")
        self.tenant_id = tenant_id
        self.prefix = prefix
        self.domain = domain
        self._slug = tenant_id.replace("-", "_")
        # ELBv2 names are capped at 32 characters
        self._short = prefix[:3]

    # Database

    @property
    def db_instance(self) -> str:
        return f"{self.prefix}-db-{self.tenant_id}"

    @property
    def db_name(self) -> str:
        return f"{self.prefix}_{self._slug}"

    def service_databases(self) -> Dict[str, str]:
        return {
            service: f"{prefix}_{self._slug}"
            for service, prefix in SERVICE_DATABASE_PREFIXES.items()
        }

    @property
    def db_username_stem(self) -> str:
        return "sb" + re.sub(r"[^a-z0-9]", "", self.tenant_id)[:8]

    def db_snapshot(self, label: str, timestamp: Optional[int] = None) -> str:
        stamp = timestamp if timestamp is not None else int(time.time())
        return f"{self.db_instance}-{label}-{stamp}"

    # Secrets

    def secret_path(self, kind: str) -> str:
        return f"{self.prefix}/tenants/{self.tenant_id}/{kind}"

    @property
    def database_secret(self) -> str:
        return self.secret_path("database")

    @property
    def integrations_secret(self) -> str:
        return self.secret_path("integrations")

    # Load balancing

    @property
    def load_balancer(self) -> str:
        return f"{self._short}-{self.tenant_id}-alb"

    @property
    def target_group(self) -> str:
        return f"{self._short}-{self.tenant_id}-tg"

    def service_target_group(self, service: str) -> str:
        return f"{self._short}-{self.tenant_id}-{service[:3]}"

    # Edge distribution

    @property
    def distribution_comment(self) -> str:
        return f"{self.prefix} CDN for {self.tenant_id}"

    @property
    def caller_reference(self) -> str:
        return f"{self.prefix}-{self.tenant_id}"

    @property
    def origin_id(self) -> str:
        return f"{self.prefix}-{self.tenant_id}-origin"

    # DNS

    @property
    def subdomain(self) -> str:
        return f"{self.tenant_id}.{self.domain}"

    @property
    def tenant_url(self) -> str:
        return f"https://{self.subdomain}"

    # Containers

    def container_family(self, service: str) -> str:
        return f"{self.prefix}-{self.tenant_id}-{service.replace('_', '-')}"

    def tags(self, **extra: str) -> List[Dict[str, str]]:
        tags = [
            {"Key": "Project", "Value": self.prefix},
            {"Key": "TenantID", "Value": self.tenant_id},
        ]
        tags.extend({"Key": key, "Value": value} for key, value in extra.items())
        return tags

    def all_names(self) -> Set[str]:
        names = {
            self.db_instance,
            self.db_name,
            self.database_secret,
            self.integrations_secret,
            self.load_balancer,
            self.target_group,
            self.distribution_comment,
            self.caller_reference,
            self.origin_id,
            self.subdomain,
        }
        names.update(self.service_databases().values())
        names.update(self.container_family(service) for service in SERVICE_DATABASE_PREFIXES)
        names.update(self.service_target_group(service) for service in SERVICE_DATABASE_PREFIXES)
        return names
