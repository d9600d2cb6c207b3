"""Просрочка неоплаченных счетов и истечение подписок"""
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from subscription_bot.db.repositories.payments import PaymentRepository
from subscription_bot.db.repositories.subscriptions import SubscriptionRepository
from subscription_bot.services.access import ChannelAccessController

logger = logging.getLogger(__name__)


class ExpiryNotifier(Protocol):
    async def subscription_expired(self, telegram_id: int) -> bool: ...


class ExpiryService:
    def __init__(
        self,
        payments: PaymentRepository,
        subscriptions: SubscriptionRepository,
        access: ChannelAccessController,
        channel_id: str,
        notifier: Optional[ExpiryNotifier] = None,
    ):
        self.payments = payments
        self.subscriptions = subscriptions
        self.access = access
        self.channel_id = channel_id
        self.notifier = notifier

    async def expire_payments(self, now: Optional[datetime] = None) -> int:
        """PENDING платежи с истекшим сроком -> EXPIRED"""
        count = await self.payments.expire_stale(now or datetime.now(timezone.utc))
        if count:
            logger.info(f"🗑️ Просрочено неоплаченных платежей: {count}")
        return count

    async def expire_subscriptions(self, now: Optional[datetime] = None) -> int:
        """
        Выключает истекшие подписки и исключает владельцев из канала.

        Пользователь с другой действующей подпиской в канале остается.
        Ошибка по одной подписке не останавливает обработку остальных.
        """
        now = now or datetime.now(timezone.utc)
        expired = await self.subscriptions.list_expired(now)
        deactivated = 0

        for sub in expired:
            telegram_id = sub["telegram_id"]
            try:
                if not await self.subscriptions.deactivate(sub["id"], now):
                    # Продлена или уже выключена другим проходом
                    continue
                deactivated += 1

                if await self.subscriptions.has_active(sub["user_id"], self.channel_id, now):
                    logger.info(f"ℹ️ У пользователя {telegram_id} есть другая активная подписка, доступ сохранен")
                    continue

                await self.access.revoke(telegram_id)
                if self.notifier is not None:
                    if await self.notifier.subscription_expired(telegram_id):
                        logger.info(f"📬 Пользователь {telegram_id} уведомлен об истечении подписки")
            except Exception as e:
                logger.error(f"Ошибка обработки истекшей подписки {sub['id']}: {e}")

        if deactivated:
            logger.info(f"⏰ Деактивировано истекших подписок: {deactivated}")
        return deactivated
