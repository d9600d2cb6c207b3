"""Доступ к закрытому каналу: ссылки-приглашения, заявки на вступление, исключение"""
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

from subscription_bot.constants import INVITE_LINK_TTL
from subscription_bot.db.repositories.subscriptions import SubscriptionRepository
from subscription_bot.db.repositories.users import UserRepository
from subscription_bot.models.subscription import SubscriptionRecord

logger = logging.getLogger(__name__)


class ChannelAccessController:
    """Выдает и отзывает доступ к каналу"""

    def __init__(
        self,
        bot: Bot,
        channel_id: str,
        subscriptions: SubscriptionRepository,
        users: UserRepository,
        channel_username: Optional[str] = None,
    ):
        self.bot = bot
        self.channel_id = channel_id
        self.subscriptions = subscriptions
        self.users = users
        self.channel_username = channel_username

    def fallback_link(self) -> Optional[str]:
        if not self.channel_username:
            return None
        return f"https://t.me/{self.channel_username.lstrip('@')}"

    async def create_invite_link(self) -> Optional[str]:
        """Одноразовая ссылка на вступление; при ошибке - публичная ссылка канала"""
        try:
            link = await self.bot.create_chat_invite_link(
                chat_id=self.channel_id,
                name=f"Invite_{int(time.time() * 1000)}",
                expire_date=datetime.now(timezone.utc) + INVITE_LINK_TTL,
                member_limit=1,
                creates_join_request=False,
            )
            return link.invite_link
        except TelegramAPIError as e:
            logger.error(f"Ошибка создания ссылки-приглашения: {e}")
            return self.fallback_link()

    async def current_subscription(
        self,
        telegram_id: int,
        now: Optional[datetime] = None,
    ) -> Optional[SubscriptionRecord]:
        user = await self.users.get_by_telegram_id(telegram_id)
        if user is None:
            return None
        return await self.subscriptions.get_current(user["id"], self.channel_id, now or datetime.now(timezone.utc))

    async def has_access(self, telegram_id: int, now: Optional[datetime] = None) -> bool:
        return await self.current_subscription(telegram_id, now) is not None

    async def handle_join_request(self, telegram_id: int) -> bool:
        """
        Заявка на вступление: одобряется при активной подписке, иначе отклоняется.
        При любой ошибке заявка отклоняется.

        Returns:
            True, если заявка одобрена
        """
        try:
            if await self.has_access(telegram_id):
                await self.bot.approve_chat_join_request(chat_id=self.channel_id, user_id=telegram_id)
                logger.info(f"✅ Заявка {telegram_id} одобрена")
                return True
            await self.bot.decline_chat_join_request(chat_id=self.channel_id, user_id=telegram_id)
            logger.info(f"🚫 Заявка {telegram_id} отклонена: нет активной подписки")
            return False
        except Exception as e:
            logger.error(f"Ошибка обработки заявки {telegram_id}: {e}")
            try:
                await self.bot.decline_chat_join_request(chat_id=self.channel_id, user_id=telegram_id)
            except TelegramAPIError as decline_error:
                logger.error(f"Ошибка отклонения заявки {telegram_id}: {decline_error}")
            return False

    async def revoke(self, telegram_id: int) -> bool:
        """Исключает пользователя из канала, оставляя возможность вернуться после оплаты"""
        try:
            await self.bot.ban_chat_member(chat_id=self.channel_id, user_id=telegram_id)
            await self.bot.unban_chat_member(chat_id=self.channel_id, user_id=telegram_id, only_if_banned=True)
        except TelegramAPIError as e:
            logger.error(f"Не удалось исключить {telegram_id} из канала: {e}")
            return False
        logger.info(f"🚪 Пользователь {telegram_id} исключен из канала")
        return True
