"""
chatgate/features/plans/service.py

Plan table and entitlement resolution.

Handles:
- Default plan definitions (free, pro, business)
- Building the immutable plan table from settings (env overrides)
- Resolving a user record to its effective Plan
"""

from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from chatgate.core.config import Settings, settings as default_settings
from chatgate.models.plan import FeatureGrant, Plan, PlanFeatures, PlanTable, UNLIMITED
from chatgate.models.user import SubscriptionTier, User


DEFAULT_PLANS = {
    "free": {
        "name": "Découverte",
        "daily_message_limit": 20,
        "max_response_length": 12000,
        "max_active_conversations": 1,
        "features": {},
    },
    "pro": {
        "name": "Pro",
        "daily_message_limit": 150,
        "max_response_length": 40000,
        "max_active_conversations": 5,
        "features": {
            "export": {"enabled": True},
            "customization": {"enabled": True},
            "api": {"enabled": True, "rate_limit": 1000},  # requests per month
            "self_hosted_model": {"enabled": True},
        },
    },
    "business": {
        "name": "Entreprise",
        "daily_message_limit": UNLIMITED,
        "max_response_length": 100000,
        "max_active_conversations": UNLIMITED,
        "features": {
            "export": {"enabled": True},
            "customization": {"enabled": True},
            "api": {"enabled": True, "rate_limit": UNLIMITED},
            "priority_support": {"enabled": True},
            "self_hosted_model": {"enabled": True},
        },
    },
}

ACTIVE_STATUSES = {"active", "trialing"}


def _override(cfg: Settings, tier: str, field: str) -> Optional[int]:
    return getattr(cfg, f"PLAN_{tier.upper()}_{field}", None)


def build_plan_table(cfg: Optional[Settings] = None) -> PlanTable:
    """Build the plan table once from settings.

    PLAN_<TIER>_DAILY_MESSAGES, PLAN_<TIER>_MAX_ACTIVE_CONVERSATIONS and
    PLAN_<TIER>_MAX_RESPONSE_LENGTH replace the defaults when set.
    """
    cfg = cfg or default_settings
    plans = {}
    for tier, config in DEFAULT_PLANS.items():
        daily = _override(cfg, tier, "DAILY_MESSAGES")
        active = _override(cfg, tier, "MAX_ACTIVE_CONVERSATIONS")
        length = _override(cfg, tier, "MAX_RESPONSE_LENGTH")
        features = PlanFeatures(
            **{name: FeatureGrant(**grant) for name, grant in config["features"].items()}
        )
        plans[tier] = Plan(
            tier=tier,
            name=config["name"],
            daily_message_limit=config["daily_message_limit"] if daily is None else daily,
            max_active_conversations=config["max_active_conversations"] if active is None else active,
            max_response_length=config["max_response_length"] if length is None else length,
            features=features,
        )
    return PlanTable(plans=plans, default_tier=SubscriptionTier.FREE.value)


@lru_cache(maxsize=1)
def get_plan_table() -> PlanTable:
    """Process-wide plan table built from the global settings."""
    return build_plan_table(default_settings)


def has_active_subscription(user: User, now: Optional[datetime] = None) -> bool:
    """Paid subscription is live: active status and not past its end date."""
    if (user.subscription_status or "").lower() not in ACTIVE_STATUSES:
        return False
    if user.subscription_end is None:
        return True
    now = now or datetime.now(timezone.utc)
    end = user.subscription_end
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    return end > now


def resolve_plan(user: User, plan_table: Optional[PlanTable] = None, *, now: Optional[datetime] = None) -> Plan:
    """Map a user to the Plan they are entitled to right now.

    Missing or unrecognized tiers resolve to free. A paid tier whose
    subscription is no longer active also resolves to free.
    """
    table = plan_table or get_plan_table()
    plan = table.get(user.subscription_tier)
    if plan.tier != table.default_tier and not has_active_subscription(user, now):
        return table.get(table.default_tier)
    return plan
