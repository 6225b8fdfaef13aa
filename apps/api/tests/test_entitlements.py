from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from models.user import User
from services.entitlements import (
    check_entitlement,
    consume_credits,
    entitlement_summary,
    is_pro,
    require_credits,
    require_tier,
    reset_daily_credits,
    validate_operation_type,
)
from services.errors import InsufficientCreditsError, TierRequiredError, ValidationError


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _user(**overrides):
    values = {
        "id": "user-1",
        "email": "user@example.com",
        "password_hash": "x",
        "name": "User",
        "tier": "free",
        "tier_expiry": None,
        "credits_remaining": 3,
        "last_credit_reset": NOW,
    }
    values.update(overrides)
    return User(**values)


def test_is_pro_false_once_expiry_passes_even_if_tier_reads_pro():
    user = _user(tier="pro", tier_expiry=NOW + timedelta(days=1))
    assert is_pro(user, NOW) is True
    assert is_pro(user, NOW + timedelta(days=2)) is False
    assert user.tier == "pro"


def test_is_pro_requires_expiry():
    assert is_pro(_user(tier="pro", tier_expiry=None), NOW) is False


def test_is_pro_accepts_naive_expiry_as_utc():
    user = _user(tier="pro", tier_expiry=(NOW + timedelta(hours=1)).replace(tzinfo=None))
    assert is_pro(user, NOW) is True


def test_reset_daily_credits_is_idempotent_within_window():
    user = _user(credits_remaining=0, last_credit_reset=NOW - timedelta(hours=25))
    assert reset_daily_credits(user, NOW) is True
    assert user.credits_remaining == 3
    assert user.last_credit_reset == NOW

    user.credits_remaining = 1
    assert reset_daily_credits(user, NOW + timedelta(hours=23)) is False
    assert user.credits_remaining == 1
    assert user.last_credit_reset == NOW


def test_reset_daily_credits_uses_pro_quota_while_pro_is_active():
    user = _user(
        tier="pro",
        tier_expiry=NOW + timedelta(days=10),
        credits_remaining=4,
        last_credit_reset=NOW - timedelta(hours=24),
    )
    assert reset_daily_credits(user, NOW) is True
    assert user.credits_remaining == 100


def test_reset_daily_credits_drops_to_free_quota_after_expiry():
    user = _user(
        tier="pro",
        tier_expiry=NOW - timedelta(minutes=1),
        credits_remaining=40,
        last_credit_reset=NOW - timedelta(days=2),
    )
    assert reset_daily_credits(user, NOW) is True
    assert user.credits_remaining == 3


def test_reset_daily_credits_when_never_reset():
    user = _user(credits_remaining=0, last_credit_reset=None)
    assert reset_daily_credits(user, NOW) is True
    assert user.credits_remaining == 3


def test_require_tier_gates_pro_operations():
    with pytest.raises(TierRequiredError):
        require_tier(_user(), "pro", NOW)
    require_tier(_user(), "free", NOW)
    require_tier(_user(tier="pro", tier_expiry=NOW + timedelta(days=1)), "pro", NOW)


def test_require_credits_reports_required_and_remaining():
    with pytest.raises(InsufficientCreditsError) as exc_info:
        require_credits(_user(credits_remaining=0), 1)
    assert exc_info.value.required == 1
    assert exc_info.value.remaining == 0
    assert exc_info.value.to_payload()["code"] == "INSUFFICIENT_CREDITS"


def test_check_entitlement_applies_tier_gate_before_credit_gate():
    with pytest.raises(TierRequiredError):
        check_entitlement(_user(credits_remaining=0), "aging", NOW)
    with pytest.raises(InsufficientCreditsError):
        check_entitlement(_user(credits_remaining=0), "enhance", NOW)
    assert check_entitlement(_user(), "enhance", NOW) == 1


def test_validate_operation_type_rejects_unknown_values():
    assert validate_operation_type("styleTransfer") == "styleTransfer"
    with pytest.raises(ValidationError):
        validate_operation_type("babyGenerator")


def test_entitlement_summary_lists_unlocked_operations():
    free_summary = entitlement_summary(_user(), NOW)
    assert free_summary["is_pro"] is False
    assert "aging" not in free_summary["unlocked_operation_types"]
    assert free_summary["daily_credits"] == 3

    pro_summary = entitlement_summary(_user(tier="pro", tier_expiry=NOW + timedelta(days=3)), NOW)
    assert pro_summary["effective_tier"] == "pro"
    assert "faceSwap" in pro_summary["unlocked_operation_types"]


@pytest.mark.asyncio
async def test_consume_credits_never_goes_negative(session_maker, make_user):
    user = await make_user(credits_remaining=1)

    async with session_maker() as session:
        assert await consume_credits(session, user.id, 1) == 0
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await consume_credits(session, user.id, 1)
        await session.commit()
    assert exc_info.value.remaining == 0

    async with session_maker() as session:
        result = await session.execute(select(User.credits_remaining).where(User.id == user.id))
        assert result.scalar() == 0


@pytest.mark.asyncio
async def test_consume_credits_from_two_sessions_debits_once(session_maker, make_user):
    user = await make_user(credits_remaining=1)

    async with session_maker() as first, session_maker() as second:
        # Both sessions saw a balance of 1 when gating.
        for session in (first, second):
            loaded = await session.get(User, user.id)
            assert loaded.credits_remaining == 1

        await consume_credits(first, user.id, 1)
        await first.commit()
        with pytest.raises(InsufficientCreditsError):
            await consume_credits(second, user.id, 1)
        await second.rollback()

    async with session_maker() as session:
        refreshed = await session.get(User, user.id)
        assert refreshed.credits_remaining == 0
