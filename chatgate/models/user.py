from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"


class User(BaseModel):
    """Identity plus entitlement and usage state.

    `daily_message_count` only means something relative to
    `last_message_date`; a different calendar day implies zero.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    display_name: Optional[str] = None
    # Raw persisted value; unknown tiers resolve to the free plan
    subscription_tier: Optional[str] = SubscriptionTier.FREE.value
    subscription_status: Optional[str] = None
    subscription_end: Optional[datetime] = None
    daily_message_count: int = 0
    last_message_date: Optional[datetime] = None
    active_conversations: int = 0
    updated_at: Optional[datetime] = None
