"""Модели ответов внешних платежных провайдеров"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class ProviderStatus(str, Enum):
    """Статус платежа у провайдера. Неизвестные значения -> UNKNOWN."""
    WAITING = "waiting"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    SENDING = "sending"
    PARTIALLY_PAID = "partially_paid"
    FINISHED = "finished"
    FAILED = "failed"
    REFUNDED = "refunded"
    EXPIRED = "expired"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ProviderStatus":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_success(self) -> bool:
        return self is ProviderStatus.FINISHED

    @property
    def is_failure(self) -> bool:
        return self in (ProviderStatus.FAILED, ProviderStatus.REFUNDED, ProviderStatus.EXPIRED)


@dataclass(frozen=True)
class Confirmation:
    """Кандидат на подтверждение платежа: транзакция или статус счёта"""
    reference: str
    destination: Optional[str]
    amount: Decimal
    occurred_at: datetime


@dataclass(frozen=True)
class StatusResult:
    status: ProviderStatus
    label: str
    confirmations: list[Confirmation] = field(default_factory=list)


def _to_decimal(value):
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class NowPaymentsPayment(BaseModel):
    """Платеж NOWPayments (ответ API и тело IPN webhook)"""
    model_config = ConfigDict(extra="ignore")

    payment_id: str
    payment_status: str
    pay_address: Optional[str] = None
    price_amount: Optional[Decimal] = None
    price_currency: Optional[str] = None
    pay_amount: Optional[Decimal] = None
    actually_paid: Optional[Decimal] = None
    pay_currency: Optional[str] = None
    order_id: Optional[str] = None
    order_description: Optional[str] = None
    invoice_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("payment_id", "order_id", mode="before")
    @classmethod
    def stringify_ids(cls, v):
        """NOWPayments отдает payment_id числом"""
        return str(v) if v is not None else v

    @field_validator("price_amount", "pay_amount", "actually_paid", mode="before")
    @classmethod
    def parse_amount(cls, v):
        return _to_decimal(v)

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def status(self) -> ProviderStatus:
        return ProviderStatus.parse(self.payment_status)


@dataclass(frozen=True)
class LedgerTransfer:
    """Входящий перевод на кошелек из TronGrid"""
    tx_id: str
    to_address: str
    amount: Decimal
    asset: str
    timestamp: datetime
