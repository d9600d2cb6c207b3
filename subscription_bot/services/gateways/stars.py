import logging
import secrets
import time
from decimal import Decimal
from typing import Any, Optional

import asyncpg
from aiogram import Bot
from aiogram.exceptions import (
    TelegramAPIError,
    TelegramNetworkError,
    TelegramRetryAfter,
    TelegramServerError,
)
from aiogram.types import LabeledPrice

from subscription_bot.constants import STARS_INVOICE_TTL
from subscription_bot.db.repositories.payments import PaymentRepository
from subscription_bot.errors import GatewayRejectedError, GatewayRetryableError
from subscription_bot.models.payment import PaymentIntent, PaymentMethod, PaymentRecord, PlanType
from subscription_bot.models.provider import ProviderStatus, StatusResult
from subscription_bot.models.user import UserRecord
from subscription_bot.services.gateways.base import GatewayKind, PaymentGateway
from subscription_bot.services.plans import PlanCatalog

logger = logging.getLogger(__name__)


def generate_invoice_payload() -> str:
    """Уникальный payload счёта"""
    return f"payment_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class TelegramStarsGateway(PaymentGateway):
    """Оплата звездами Telegram: счёт отправляет бот, подтверждение приходит апдейтом"""

    kind = GatewayKind.IN_APP_CURRENCY
    methods = frozenset({PaymentMethod.TELEGRAM_STARS})
    ttl = STARS_INVOICE_TTL

    def __init__(self, pool: asyncpg.Pool, payments: PaymentRepository, catalog: PlanCatalog, bot: Bot):
        super().__init__(pool, payments, catalog)
        self.bot = bot

    def _payment_fields(self, method: PaymentMethod, price: Decimal) -> dict[str, Any]:
        return {"invoice_payload": generate_invoice_payload()}

    async def _open_intent(
        self,
        conn: asyncpg.Connection,
        payment: PaymentRecord,
        user: UserRecord,
        plan: PlanType,
        method: PaymentMethod,
    ) -> PaymentIntent:
        title = self.catalog.title(plan)
        try:
            await self.bot.send_invoice(
                chat_id=user["telegram_id"],
                title=f"Подписка на {title}",
                description=f"Доступ к каналу на {title}",
                payload=payment["invoice_payload"],
                currency="XTR",
                prices=[LabeledPrice(label="Подписка", amount=int(payment["amount"]))],
                start_parameter=f"payment_{payment['id']}",
            )
        except (TelegramRetryAfter, TelegramNetworkError, TelegramServerError) as e:
            raise GatewayRetryableError(f"Не удалось отправить счёт: {e}") from e
        except TelegramAPIError as e:
            raise GatewayRejectedError(f"Telegram отклонил счёт: {e}") from e

        return PaymentIntent(
            payment=payment,
            provider_reference=payment["invoice_payload"],
            pay_to=None,
            pay_amount=payment["amount"],
            pay_currency="XTR",
        )

    async def get_status(self, payment: PaymentRecord) -> StatusResult:
        # Telegram сам присылает successful_payment, опрашивать нечего
        return StatusResult(status=ProviderStatus.WAITING, label="Ожидает оплаты")

    async def refund(self, telegram_id: int, charge_id: Optional[str]) -> bool:
        """Возврат звезд (best-effort)"""
        if not charge_id:
            return False
        try:
            await self.bot.refund_star_payment(user_id=telegram_id, telegram_payment_charge_id=charge_id)
        except TelegramAPIError as e:
            logger.error(f"Ошибка возврата звезд {charge_id}: {e}")
            return False
        logger.info(f"↩️ Звезды возвращены: charge_id={charge_id}")
        return True
