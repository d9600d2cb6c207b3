"""Модели для платежей"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, TypedDict


class PlanType(str, Enum):
    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"


class PaymentMethod(str, Enum):
    """Способ оплаты. Крипто-способы обслуживает одна стратегия на инсталляцию."""
    TELEGRAM_STARS = "TELEGRAM_STARS"
    CRYPTO_TRX = "CRYPTO_TRX"
    CRYPTO_USDT = "CRYPTO_USDT"


CRYPTO_METHODS = frozenset({PaymentMethod.CRYPTO_TRX, PaymentMethod.CRYPTO_USDT})


class PaymentStatus(str, Enum):
    """PENDING -> COMPLETED | EXPIRED | FAILED, все кроме PENDING терминальные"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class PaymentRecord(TypedDict):
    """Запись платежа из базы данных"""
    id: str
    user_id: str
    amount: Decimal
    currency: str
    plan_type: str
    payment_type: str
    status: str
    invoice_payload: Optional[str]
    telegram_payment_charge_id: Optional[str]
    crypto_address: Optional[str]
    crypto_tx_hash: Optional[str]
    expected_amount: Optional[Decimal]
    expires_at: datetime
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class PaymentIntent:
    """Результат создания счёта во внешнем провайдере"""
    payment: PaymentRecord
    provider_reference: str
    pay_to: Optional[str]
    pay_amount: Decimal
    pay_currency: str
    invoice_url: Optional[str] = None
