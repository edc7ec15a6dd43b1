"""
User domain service.
- get_user(user_id)
- get_or_create_user(user_id)
- set_subscription(): written by the billing integration, read by governance
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from chatgate.core.database import get_db_session, users as app_users, as_utc, utcnow
from chatgate.models.user import SubscriptionTier, User


def row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        display_name=row.display_name,
        subscription_tier=row.subscription_tier,
        subscription_status=row.subscription_status,
        subscription_end=as_utc(row.subscription_end),
        daily_message_count=row.daily_message_count or 0,
        last_message_date=as_utc(row.last_message_date),
        active_conversations=row.active_conversations or 0,
    )


def get_user(user_id: str, *, session=None) -> Optional[User]:
    if session is not None:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        return row_to_user(row) if row else None
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        return row_to_user(row) if row else None


def get_or_create_user(user_id: str, display_name: Optional[str] = None) -> User:
    """Load a user, creating a free-tier record on first sight.

    A concurrent first request may insert the same id first; the insert
    conflict is resolved by loading that row.
    """
    existing = get_user(user_id)
    if existing:
        return existing

    now = utcnow()
    try:
        with get_db_session() as session:
            session.execute(
                insert(app_users).values(
                    user_id=user_id,
                    display_name=display_name,
                    subscription_tier=SubscriptionTier.FREE.value,
                    daily_message_count=0,
                    active_conversations=0,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        winner = get_user(user_id)
        if winner is None:
            raise
        return winner

    return User(user_id=user_id, created_at=now, updated_at=now, display_name=display_name)


def set_subscription(
    user_id: str,
    tier: str,
    *,
    status: Optional[str] = "active",
    ends_at: Optional[datetime] = None,
) -> User:
    """Record the entitlement tier produced by the billing lifecycle."""
    get_or_create_user(user_id)
    with get_db_session() as session:
        session.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(
                subscription_tier=tier,
                subscription_status=status,
                subscription_end=ends_at,
                updated_at=utcnow(),
            )
        )
    return get_user(user_id)
