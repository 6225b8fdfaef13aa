"""Tier and credit entitlement policy."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import TIER_FREE, TIER_PRO, User
from services.errors import InsufficientCreditsError, TierRequiredError, ValidationError

logger = logging.getLogger(__name__)

CREDIT_RESET_INTERVAL = timedelta(hours=24)

OPERATION_TYPES = (
    "enhance",
    "restore",
    "faceSwap",
    "aging",
    "styleTransfer",
    "upscale",
    "filter",
)
PRO_OPERATION_TYPES = frozenset({"faceSwap", "aging"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the store."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validate_operation_type(operation_type: str) -> str:
    if operation_type not in OPERATION_TYPES:
        raise ValidationError(
            f"Unsupported operation type '{operation_type}'.",
            supported_operation_types=list(OPERATION_TYPES),
        )
    return operation_type


def required_tier(operation_type: str) -> str:
    return TIER_PRO if operation_type in PRO_OPERATION_TYPES else TIER_FREE


def is_pro(user: User, now: Optional[datetime] = None) -> bool:
    """Effective tier check; a lapsed expiry reads as Free whatever is stored."""
    current = now or utc_now()
    expiry = as_utc(user.tier_expiry)
    return user.tier == TIER_PRO and expiry is not None and expiry > current


def daily_quota(user: User, now: Optional[datetime] = None) -> int:
    if is_pro(user, now):
        return max(int(settings.PRO_DAILY_CREDITS), 0)
    return max(int(settings.FREE_DAILY_CREDITS), 0)


def reset_daily_credits(user: User, now: Optional[datetime] = None) -> bool:
    """Refill the balance once 24h have passed since the last reset.

    Returns True when the account was mutated; the caller persists it.
    """
    current = now or utc_now()
    last_reset = as_utc(user.last_credit_reset)
    if last_reset is not None and current - last_reset < CREDIT_RESET_INTERVAL:
        return False

    user.credits_remaining = daily_quota(user, current)
    user.last_credit_reset = current
    logger.info("Daily credits reset for user %s to %s", user.id, user.credits_remaining)
    return True


def require_tier(user: User, min_tier: str, now: Optional[datetime] = None) -> None:
    if min_tier == TIER_PRO and not is_pro(user, now):
        raise TierRequiredError()


def require_credits(user: User, amount: int) -> None:
    remaining = int(user.credits_remaining or 0)
    if remaining < amount:
        raise InsufficientCreditsError(required=amount, remaining=remaining)


def check_entitlement(user: User, operation_type: str, now: Optional[datetime] = None) -> int:
    """Apply the tier gate then the credit gate; returns the operation cost."""
    cost = max(int(settings.CREDIT_COST_PER_EDIT), 0)
    require_tier(user, required_tier(operation_type), now)
    require_credits(user, cost)
    return cost


async def consume_credits(db: AsyncSession, user_id: str, amount: int) -> int:
    """Debit credits with a conditional update against the store.

    The balance is never read into memory first, so two concurrent debits
    cannot both succeed on a balance that only covers one. Does not commit.
    Returns the balance after the debit.
    """
    debit = max(int(amount), 0)
    if debit == 0:
        return await get_credit_balance(db, user_id)

    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.credits_remaining >= debit)
        .values(credits_remaining=User.credits_remaining - debit)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        remaining = await get_credit_balance(db, user_id)
        raise InsufficientCreditsError(required=debit, remaining=remaining)

    balance_after = await get_credit_balance(db, user_id)
    logger.info("Debited %s credit(s) from user %s; balance now %s", debit, user_id, balance_after)
    return balance_after


async def get_credit_balance(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(select(User.credits_remaining).where(User.id == user_id))
    return int(result.scalar() or 0)


def entitlement_summary(user: User, now: Optional[datetime] = None) -> Dict[str, Any]:
    current = now or utc_now()
    pro = is_pro(user, current)
    last_reset = as_utc(user.last_credit_reset)
    next_reset = (last_reset + CREDIT_RESET_INTERVAL) if last_reset else current
    tier_expiry = as_utc(user.tier_expiry)
    return {
        "tier": user.tier,
        "effective_tier": TIER_PRO if pro else TIER_FREE,
        "is_pro": pro,
        "tier_expiry": tier_expiry.isoformat() if tier_expiry else None,
        "credits_remaining": int(user.credits_remaining or 0),
        "daily_credits": daily_quota(user, current),
        "credit_cost_per_edit": max(int(settings.CREDIT_COST_PER_EDIT), 0),
        "next_credit_reset": next_reset.isoformat(),
        "unlocked_operation_types": [
            op for op in OPERATION_TYPES if pro or op not in PRO_OPERATION_TYPES
        ],
    }
