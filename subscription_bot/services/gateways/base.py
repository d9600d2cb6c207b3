"""Общий контракт платежных шлюзов"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Union

import asyncpg

from subscription_bot.db.pool import transaction
from subscription_bot.db.repositories.payments import PaymentRepository
from subscription_bot.errors import UnsupportedPaymentMethodError
from subscription_bot.models.payment import PaymentIntent, PaymentMethod, PaymentRecord, PlanType
from subscription_bot.models.provider import StatusResult
from subscription_bot.models.user import UserRecord
from subscription_bot.services.plans import PlanCatalog

logger = logging.getLogger(__name__)


class GatewayKind(str, Enum):
    IN_APP_CURRENCY = "in_app_currency"
    CRYPTO_HOSTED_INVOICE = "crypto_hosted_invoice"
    CRYPTO_LEDGER_SCAN = "crypto_ledger_scan"


class PaymentGateway(ABC):
    """
    Создает счёт у провайдера и сообщает его статус.

    Запись платежа вставляется в той же транзакции, что оборачивает
    внешний вызов: если провайдер ответил ошибкой, строка откатывается.
    """

    kind: GatewayKind
    methods: frozenset[PaymentMethod]
    ttl: timedelta

    def __init__(self, pool: asyncpg.Pool, payments: PaymentRepository, catalog: PlanCatalog):
        self.pool = pool
        self.payments = payments
        self.catalog = catalog

    def supports(self, method: PaymentMethod) -> bool:
        return method in self.methods

    async def create_intent(
        self,
        user: UserRecord,
        plan: Union[str, PlanType],
        method: PaymentMethod,
    ) -> PaymentIntent:
        plan = self.catalog.resolve(plan)
        if not self.supports(method):
            raise UnsupportedPaymentMethodError(method.value)
        price = self.catalog.price(plan, method)
        now = datetime.now(timezone.utc)

        async with transaction(self.pool) as conn:
            payment = await self.payments.create(
                user_id=user["id"],
                amount=price,
                currency=self.catalog.currency(method),
                plan_type=plan.value,
                method=method,
                expires_at=now + self.ttl,
                conn=conn,
                **self._payment_fields(method, price),
            )
            intent = await self._open_intent(conn, payment, user, plan, method)

        logger.info(
            f"💳 Создан платеж {payment['id']} ({self.kind.value}): "
            f"user={user['id']}, {plan.value}, {intent.pay_amount} {intent.pay_currency}"
        )
        return intent

    def _payment_fields(self, method: PaymentMethod, price: Decimal) -> dict[str, Any]:
        """Дополнительные поля строки платежа, известные до внешнего вызова"""
        return {}

    @abstractmethod
    async def _open_intent(
        self,
        conn: asyncpg.Connection,
        payment: PaymentRecord,
        user: UserRecord,
        plan: PlanType,
        method: PaymentMethod,
    ) -> PaymentIntent:
        """Внешний вызов провайдера внутри транзакции создания платежа"""

    @abstractmethod
    async def get_status(self, payment: PaymentRecord) -> StatusResult:
        """Статус платежа у провайдера; только чтение"""
