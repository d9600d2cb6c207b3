import logging
from datetime import datetime
from typing import Optional

from aiogram import Bot
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from subscription_bot.constants import MOSCOW_TZ
from subscription_bot.models.subscription import CompletionResult
from subscription_bot.services.access import ChannelAccessController
from subscription_bot.services.plans import PlanCatalog

logger = logging.getLogger(__name__)


def format_datetime_moscow(value: datetime) -> str:
    """Дата в московском времени для сообщений пользователю"""
    return value.astimezone(MOSCOW_TZ).strftime("%d.%m.%Y %H:%M")


def plans_keyboard(catalog: PlanCatalog) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text=f"📅 На {catalog.title(plan)}", callback_data=f"plan_{plan.value}")]
        for plan in catalog.plans()
    ])


class NotificationService:
    """Сервис для отправки уведомлений пользователям (best-effort)"""

    def __init__(
        self,
        bot: Bot,
        access: ChannelAccessController,
        catalog: PlanCatalog,
        admin_ids: Optional[list[int]] = None,
    ):
        self.bot = bot
        self.access = access
        self.catalog = catalog
        self.admin_ids = admin_ids or []

    async def payment_completed(self, telegram_id: int, result: CompletionResult) -> bool:
        """Оплата принята: срок подписки и ссылка-приглашение"""
        try:
            end_date = format_datetime_moscow(result.subscription["end_date"])
            title = self.catalog.title(result.subscription["plan_type"])
            if result.extended:
                text = (
                    f"✅ Платеж успешно обработан!\n\n"
                    f"🔄 Подписка продлена на {title}\n"
                    f"📅 Действует до: {end_date} (МСК)"
                )
            else:
                text = (
                    f"✅ Платеж успешно обработан! Вы получили доступ к каналу.\n\n"
                    f"📅 Подписка на {title} действует до: {end_date} (МСК)"
                )

            link = await self.access.create_invite_link()
            markup: Optional[InlineKeyboardMarkup] = None
            if link:
                markup = InlineKeyboardMarkup(inline_keyboard=[
                    [InlineKeyboardButton(text="🔗 Войти в канал", url=link)]
                ])
            await self.bot.send_message(telegram_id, text, reply_markup=markup)
            await self.notify_admins_payment(telegram_id, result)
            return True
        except Exception as e:
            logger.error(f"Не удалось уведомить пользователя {telegram_id}: {e}")
            return False

    async def payment_failed(self, telegram_id: int, label: str) -> bool:
        try:
            await self.bot.send_message(
                telegram_id,
                f"❌ Платеж не прошел: {label}.\n\nВы можете выбрать тариф и попробовать снова.",
                reply_markup=plans_keyboard(self.catalog),
            )
            return True
        except Exception as e:
            logger.error(f"Не удалось уведомить пользователя {telegram_id}: {e}")
            return False

    async def subscription_expired(self, telegram_id: int) -> bool:
        """Подписка истекла, предлагаем продлить"""
        try:
            await self.bot.send_message(
                telegram_id,
                "⏰ Ваша подписка истекла, доступ к каналу закрыт.\n\nДля продления выберите тариф:",
                reply_markup=plans_keyboard(self.catalog),
            )
            return True
        except Exception as e:
            logger.error(f"Не удалось уведомить пользователя {telegram_id}: {e}")
            return False

    async def notify_admins_payment(self, telegram_id: int, result: CompletionResult) -> None:
        """Уведомляет админов об оплаченной подписке"""
        payment = result.payment
        for admin_id in self.admin_ids:
            try:
                await self.bot.send_message(
                    admin_id,
                    f"💰 Новая оплата:\n\n"
                    f"Пользователь: <code>{telegram_id}</code>\n"
                    f"Тариф: {result.subscription['plan_type']}\n"
                    f"Сумма: {payment.get('amount')} {payment.get('currency')}\n"
                    f"До: {format_datetime_moscow(result.subscription['end_date'])} (МСК)",
                    parse_mode="HTML"
                )
            except Exception as e:
                logger.error(f"Не удалось уведомить админа {admin_id}: {e}")
