"""
chatgate/models/plan.py

Plan model: the limits and feature flags attached to a subscription tier.

Plans are a static lookup keyed by tier, never persisted per user.
Numeric limits use -1 for "unlimited"; `max_response_length <= 0`
means responses are unbounded.
"""

from typing import Mapping, Optional
from pydantic import BaseModel, ConfigDict

UNLIMITED = -1


class FeatureGrant(BaseModel):
    """A capability, optionally rate-limited (requests per month, -1 unlimited)."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    rate_limit: Optional[int] = None


class PlanFeatures(BaseModel):
    model_config = ConfigDict(frozen=True)

    export: FeatureGrant = FeatureGrant()
    customization: FeatureGrant = FeatureGrant()
    api: FeatureGrant = FeatureGrant()
    priority_support: FeatureGrant = FeatureGrant()
    self_hosted_model: FeatureGrant = FeatureGrant()

    def allows(self, feature: str) -> bool:
        grant = getattr(self, feature, None)
        return isinstance(grant, FeatureGrant) and grant.enabled

    def as_flags(self) -> dict:
        return {name: grant.model_dump() for name, grant in self}


class Plan(BaseModel):
    """
    Plan represents a capability tier.

    Examples:
    - free (default)
    - pro
    - business

    Plans do NOT include pricing or billing cycles.
    """
    model_config = ConfigDict(frozen=True)

    tier: str
    name: str
    daily_message_limit: int
    max_active_conversations: int
    max_response_length: int
    features: PlanFeatures = PlanFeatures()

    @property
    def unlimited_messages(self) -> bool:
        return self.daily_message_limit == UNLIMITED

    @property
    def unlimited_conversations(self) -> bool:
        return self.max_active_conversations == UNLIMITED


class PlanTable(BaseModel):
    """Immutable tier -> Plan mapping built once from configuration."""
    model_config = ConfigDict(frozen=True)

    plans: Mapping[str, Plan]
    default_tier: str = "free"

    def get(self, tier: Optional[str]) -> Plan:
        key = (tier or "").strip().lower()
        return self.plans.get(key) or self.plans[self.default_tier]
