from decimal import Decimal
from typing import Optional

from subscription_bot.constants import AMOUNT_TOLERANCE
from subscription_bot.models.payment import PaymentRecord
from subscription_bot.models.provider import Confirmation


def amounts_match(actual: Decimal, expected: Decimal, tolerance: Decimal = AMOUNT_TOLERANCE) -> bool:
    return abs(Decimal(actual) - Decimal(expected)) < tolerance


def matches_payment(
    payment: PaymentRecord,
    confirmation: Confirmation,
    tolerance: Decimal = AMOUNT_TOLERANCE,
) -> bool:
    """
    Подтверждение относится к платежу, только если совпадают все три условия:
    адрес получателя, сумма (с допуском) и время не раньше создания платежа.
    """
    expected: Optional[Decimal] = payment.get("expected_amount")
    if expected is None:
        expected = payment["amount"]

    address = payment.get("crypto_address")
    if not address or confirmation.destination != address:
        return False

    if not amounts_match(confirmation.amount, expected, tolerance):
        return False

    return confirmation.occurred_at >= payment["created_at"]
