"""Subscription purchase, cancellation and status."""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.subscription import (
    PLAN_MONTHLY,
    PLAN_YEARLY,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_EXPIRED,
    Subscription,
)
from models.user import TIER_PRO, User
from services.entitlements import as_utc, is_pro, utc_now
from services.errors import NotFoundError, ValidationError
from services.payments import PaymentProcessor

logger = logging.getLogger(__name__)

PLAN_PRICES = {
    PLAN_MONTHLY: {"amount": 9.99, "duration_days": 30},
    PLAN_YEARLY: {"amount": 59.99, "duration_days": 365},
}


def list_plans() -> List[Dict[str, Any]]:
    return [
        {
            "id": "free",
            "name": "Free",
            "description": "Basic access with limited features",
            "monthly_price": 0,
            "yearly_price": 0,
            "features": [
                f"{settings.FREE_DAILY_CREDITS} AI edits per day",
                "Standard quality export",
                "Basic filters",
                "Ad-supported",
            ],
            "daily_credits": settings.FREE_DAILY_CREDITS,
            "hd_export": False,
            "no_ads": False,
            "priority_processing": False,
        },
        {
            "id": "pro",
            "name": "PRO",
            "description": "Full access to all features",
            "monthly_price": PLAN_PRICES[PLAN_MONTHLY]["amount"],
            "yearly_price": PLAN_PRICES[PLAN_YEARLY]["amount"],
            "features": [
                f"{settings.PRO_DAILY_CREDITS} AI edits per day",
                "HD quality export",
                "All filters & styles",
                "No ads",
                "Priority processing",
                "Advanced face tools",
            ],
            "daily_credits": settings.PRO_DAILY_CREDITS,
            "hd_export": True,
            "no_ads": True,
            "priority_processing": True,
        },
    ]


async def _active_subscriptions(db: AsyncSession, user_id: str) -> List[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status == SUBSCRIPTION_ACTIVE)
        .order_by(Subscription.created_at.desc(), Subscription.start_date.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def purchase(
    db: AsyncSession,
    user: User,
    plan_type: str,
    payment_method: str,
    processor: PaymentProcessor,
    now: Optional[datetime] = None,
) -> Subscription:
    """Charge for a plan, supersede any active subscription and activate PRO."""
    plan = PLAN_PRICES.get(plan_type)
    if plan is None:
        raise ValidationError(f"Invalid plan type '{plan_type}'.", allowed_values=sorted(PLAN_PRICES))

    current = now or utc_now()
    payment_id = await processor.charge(payment_method, plan["amount"])

    for previous in await _active_subscriptions(db, user.id):
        previous.status = SUBSCRIPTION_CANCELLED
        previous.cancelled_at = current
        previous.auto_renew = False
        logger.info("Subscription %s superseded for user %s", previous.id, user.id)

    end_date = current + timedelta(days=plan["duration_days"])
    subscription = Subscription(
        id=str(uuid.uuid4()),
        user_id=user.id,
        plan_type=plan_type,
        status=SUBSCRIPTION_ACTIVE,
        start_date=current,
        end_date=end_date,
        payment_id=payment_id,
        payment_method=payment_method,
        amount=plan["amount"],
        currency="USD",
        auto_renew=True,
    )
    db.add(subscription)

    user.tier = TIER_PRO
    user.tier_expiry = end_date
    user.credits_remaining = max(int(settings.PRO_DAILY_CREDITS), 0)
    await db.commit()
    await db.refresh(subscription)
    logger.info("User %s purchased %s plan until %s", user.id, plan_type, end_date.isoformat())
    return subscription


async def cancel(db: AsyncSession, user: User, now: Optional[datetime] = None) -> Subscription:
    """Stop renewal; PRO access continues until the current tier expiry."""
    current = now or utc_now()
    active = await _active_subscriptions(db, user.id)
    if not active:
        raise NotFoundError("No active subscription found")

    subscription = active[0]
    subscription.status = SUBSCRIPTION_CANCELLED
    subscription.cancelled_at = current
    subscription.auto_renew = False
    await db.commit()
    logger.info("Subscription %s cancelled for user %s", subscription.id, user.id)
    return subscription


async def expire_lapsed_subscriptions(db: AsyncSession, now: Optional[datetime] = None) -> int:
    current = now or utc_now()
    result = await db.execute(
        update(Subscription)
        .where(Subscription.status == SUBSCRIPTION_ACTIVE, Subscription.end_date <= current)
        .values(status=SUBSCRIPTION_EXPIRED, auto_renew=False)
        .execution_options(synchronize_session=False)
    )
    expired = int(result.rowcount or 0)
    if expired:
        await db.commit()
        logger.info("Expired %s lapsed subscription(s)", expired)
    return expired


def _serialize(subscription: Subscription, now: datetime) -> Dict[str, Any]:
    cancelled_at = as_utc(subscription.cancelled_at)
    return {
        "id": subscription.id,
        "plan_id": "pro",
        "plan_type": subscription.plan_type,
        "status": subscription.status,
        "start_date": as_utc(subscription.start_date).isoformat(),
        "end_date": as_utc(subscription.end_date).isoformat(),
        "is_active": subscription.is_active(now),
        "amount": subscription.amount,
        "currency": subscription.currency,
        "auto_renew": subscription.auto_renew,
        "payment_id": subscription.payment_id,
        "cancelled_at": cancelled_at.isoformat() if cancelled_at else None,
    }


def serialize_subscription(subscription: Subscription, now: Optional[datetime] = None) -> Dict[str, Any]:
    return _serialize(subscription, now or utc_now())


async def subscription_status(db: AsyncSession, user: User, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Most recent active subscription, or a synthesized Free status."""
    current = now or utc_now()
    await expire_lapsed_subscriptions(db, current)
    active = await _active_subscriptions(db, user.id)
    if active:
        payload = _serialize(active[0], current)
    else:
        created_at = as_utc(user.created_at)
        payload = {
            "id": None,
            "plan_id": "free",
            "plan_type": None,
            "status": "active",
            "start_date": created_at.isoformat() if created_at else None,
            "end_date": None,
            "is_active": False,
        }
    payload["is_pro"] = is_pro(user, current)
    tier_expiry = as_utc(user.tier_expiry)
    payload["tier_expiry"] = tier_expiry.isoformat() if tier_expiry else None
    return payload
