from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class AccountTier(str, Enum):
    TRIAL = "trial"
    PAID = "paid"


class Plan(str, Enum):
    BASIC = "basic"
    PROFESSIONAL = "professional"


class FeatureFlags(BaseModel):
    crm: bool = True
    file_portal: bool = True
    booking: bool = False
    newsletter: bool = False

    class Config:
        frozen = True


class IntegrationCredentials(BaseModel):
    stripe: Optional[str] = None
    smtp: Optional[Dict[str, str]] = None
    storage: Optional[Dict[str, str]] = None
    extra: Dict[str, str] = Field(default_factory=dict)

    class Config:
        frozen = True


class TenantConfig(BaseModel):
    tenant_id: str = Field(
        ...,
        min_length=3,
        max_length=24,
        pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$",
        description="Globally unique tenant identifier; prefixes every created resource",
    )
    tier: AccountTier = AccountTier.TRIAL
    plan: Plan = Plan.BASIC
    email: Optional[str] = None
    business_name: Optional[str] = Field(None, max_length=100)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    integrations: Optional[IntegrationCredentials] = None
    compute_instance_ids: List[str] = Field(default_factory=list)

    class Config:
        frozen = True

    @model_validator(mode="before")
    @classmethod
    def split_tier(cls, data: Any) -> Any:
        # Accept the "paid/professional" shorthand used by the billing flow
        if isinstance(data, dict) and isinstance(data.get("tier"), str) and "/" in data["tier"]:
            data = dict(data)
            tier, plan = data["tier"].split("/", 1)
            data["tier"] = tier
            data.setdefault("plan", plan)
        return data

    @property
    def tier_key(self) -> str:
        if self.tier == AccountTier.TRIAL:
            return AccountTier.TRIAL.value
        return f"{self.tier.value}/{self.plan.value}"

    @property
    def is_trial(self) -> bool:
        return self.tier == AccountTier.TRIAL
