"""Payment processor collaborators."""

from __future__ import annotations

import abc
import logging
import uuid

from services.errors import PaymentDeclinedError

logger = logging.getLogger(__name__)

DECLINED_TEST_METHOD = "declined"


class PaymentProcessor(abc.ABC):
    provider = "abstract"

    @abc.abstractmethod
    async def charge(self, method: str, amount: float) -> str:
        """Charge the payment method and return a payment id."""


class ManualPaymentProcessor(PaymentProcessor):
    """Records purchases without a card network; used until a gateway is wired."""

    provider = "manual"

    async def charge(self, method: str, amount: float) -> str:
        normalized = (method or "").strip()
        if not normalized:
            raise PaymentDeclinedError("A payment method is required.")
        if normalized.lower() == DECLINED_TEST_METHOD:
            raise PaymentDeclinedError("Payment was declined.", payment_method=normalized)
        payment_id = f"manual:{uuid.uuid4()}"
        logger.info("Manual charge of %.2f via %s recorded as %s", amount, normalized, payment_id)
        return payment_id


def get_payment_processor() -> PaymentProcessor:
    return ManualPaymentProcessor()
