"""Subscription and billing router."""

from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.entitlements import entitlement_summary
from services.payments import PaymentProcessor, get_payment_processor
from services.subscriptions import (
    cancel,
    list_plans,
    purchase,
    serialize_subscription,
    subscription_status,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    plan_type: Literal["monthly", "yearly"] = "monthly"
    payment_method: str = Field(min_length=1, max_length=100)


@router.get("/plans")
async def get_plans():
    return {"plans": list_plans()}


@router.get("/status")
async def get_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {"subscription": await subscription_status(db, user)}


@router.post("/purchase")
async def purchase_subscription(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("subscription_purchase", limit=20, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """Charge the payment method and activate PRO for the plan period."""
    subscription = await purchase(db, user, request.plan_type, request.payment_method, processor)
    return {
        "subscription": serialize_subscription(subscription),
        "entitlement": entitlement_summary(user),
    }


@router.post("/cancel")
async def cancel_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    subscription = await cancel(db, user)
    return {
        "subscription": serialize_subscription(subscription),
        "message": "Subscription cancelled. You will retain access until the end of your billing period.",
    }
