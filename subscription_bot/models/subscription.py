from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, TypedDict

from subscription_bot.models.payment import PaymentRecord


class SubscriptionRecord(TypedDict):
    """Запись подписки из базы данных"""
    id: str
    user_id: str
    channel_id: str
    plan_type: str
    start_date: datetime
    end_date: datetime
    is_active: bool
    payment_id: Optional[str]
    created_at: datetime


class ExpiredSubscription(SubscriptionRecord):
    """Истекшая подписка вместе с Telegram ID владельца"""
    telegram_id: int


class ExtensionAction(str, Enum):
    CREATE = "create"
    EXTEND = "extend"


@dataclass(frozen=True)
class ExtensionDecision:
    """Что сделать с подпиской после успешной оплаты"""
    action: ExtensionAction
    start_date: datetime
    end_date: datetime
    plan_type: str
    payment_id: str
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class CompletionResult:
    """Итог транзакции завершения платежа"""
    payment: PaymentRecord
    subscription: SubscriptionRecord
    decision: ExtensionDecision

    @property
    def extended(self) -> bool:
        return self.decision.action is ExtensionAction.EXTEND
