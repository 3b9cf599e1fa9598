import os
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from stackbox.errors import ConfigValidationError


class SslMode(str, Enum):
    REQUIRED = "required"
    BYPASS = "bypass"
    FALLBACK = "fallback"


class Settings(BaseModel):
    region: str = "us-east-1"
    # Certificates used by edge distributions must live in us-east-1
    certificate_region: str = "us-east-1"
    primary_domain: str = "stackbox.io"
    resource_prefix: str = Field("stackbox", pattern=r"^[a-z][a-z0-9]{1,11}$")

    deployments_table: str = "stackbox-deployments-prod"
    events_table: Optional[str] = "stackbox-events-prod"
    queue_url: Optional[str] = None
    ecs_cluster: str = "stackbox-tenants"

    ssl_mode: SslMode = SslMode.REQUIRED
    poll_interval_seconds: float = Field(30, gt=0)
    certificate_timeout_seconds: float = Field(1800, gt=0)
    database_timeout_seconds: float = Field(1800, gt=0)
    progress_log_seconds: float = Field(120, gt=0)

    max_workers: int = Field(4, ge=1)
    secret_recovery_window_days: int = Field(30, ge=7, le=30)
    dns_ttl: int = Field(300, ge=0)
    db_engine: str = "mysql"
    db_engine_version: str = "8.0.35"
    event_retention_days: int = Field(90, ge=1)

    class Config:
        frozen = True

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        mapping = {
            "region": env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION"),
            "certificate_region": env.get("STACKBOX_CERTIFICATE_REGION"),
            "primary_domain": env.get("STACKBOX_PRIMARY_DOMAIN"),
            "resource_prefix": env.get("STACKBOX_RESOURCE_PREFIX"),
            "deployments_table": env.get("DEPLOYMENTS_TABLE"),
            "queue_url": env.get("PROVISIONING_QUEUE_URL"),
            "ecs_cluster": env.get("STACKBOX_ECS_CLUSTER"),
            "ssl_mode": env.get("STACKBOX_SSL_MODE"),
            "poll_interval_seconds": env.get("STACKBOX_POLL_INTERVAL"),
            "certificate_timeout_seconds": env.get("STACKBOX_CERTIFICATE_TIMEOUT"),
            "database_timeout_seconds": env.get("STACKBOX_DATABASE_TIMEOUT"),
            "progress_log_seconds": env.get("STACKBOX_PROGRESS_LOG_INTERVAL"),
            "max_workers": env.get("STACKBOX_MAX_WORKERS"),
            "secret_recovery_window_days": env.get("STACKBOX_SECRET_RECOVERY_DAYS"),
            "dns_ttl": env.get("STACKBOX_DNS_TTL"),
            "db_engine": env.get("STACKBOX_DB_ENGINE"),
            "db_engine_version": env.get("STACKBOX_DB_ENGINE_VERSION"),
            "event_retention_days": env.get("EVENT_RETENTION_DAYS"),
        }
        values = {key: value for key, value in mapping.items() if value}
        # An explicitly empty EVENTS_TABLE turns event persistence off
        if "EVENTS_TABLE" in env:
            values["events_table"] = env["EVENTS_TABLE"] or None
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigValidationError(f"Invalid settings: {e}") from e
