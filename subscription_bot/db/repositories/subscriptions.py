from datetime import datetime
from typing import Optional
from uuid import uuid4
import asyncpg

from subscription_bot.db.repositories.base import BaseRepository
from subscription_bot.errors import DuplicateReferenceError
from subscription_bot.models.subscription import ExpiredSubscription, SubscriptionRecord

SUBSCRIPTION_COLUMNS = "id, user_id, channel_id, plan_type, start_date, end_date, is_active, payment_id, created_at"


class SubscriptionRepository(BaseRepository):
    """Репозиторий для работы с подписками в БД"""

    async def list_active(
        self,
        conn: asyncpg.Connection,
        user_id: str,
        channel_id: str,
        now: datetime,
        lock: bool = False,
    ) -> list[SubscriptionRecord]:
        """
        Действующие подписки пользователя на канал, самая поздняя первой.

        lock=True блокирует строки до конца транзакции: deactivate ждет
        коммита и заново проверяет end_date уже продленной строки.
        """
        rows = await conn.fetch(
            f"""
            SELECT {SUBSCRIPTION_COLUMNS} FROM subscriptions
            WHERE user_id = $1 AND channel_id = $2
              AND is_active = TRUE AND end_date >= $3
            ORDER BY end_date DESC
            {'FOR UPDATE' if lock else ''}
            """,
            user_id, channel_id, now
        )
        return [dict(row) for row in rows]  # type: ignore

    async def create(
        self,
        conn: asyncpg.Connection,
        *,
        user_id: str,
        channel_id: str,
        plan_type: str,
        start_date: datetime,
        end_date: datetime,
        payment_id: str,
    ) -> SubscriptionRecord:
        try:
            row = await conn.fetchrow(
                f"""
                INSERT INTO subscriptions (id, user_id, channel_id, plan_type, start_date, end_date, is_active, payment_id)
                VALUES ($1, $2, $3, $4, $5, $6, TRUE, $7)
                RETURNING {SUBSCRIPTION_COLUMNS}
                """,
                str(uuid4()), user_id, channel_id, plan_type, start_date, end_date, payment_id
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateReferenceError(payment_id) from e
        return dict(row)  # type: ignore

    async def extend(
        self,
        conn: asyncpg.Connection,
        subscription_id: str,
        *,
        end_date: datetime,
        plan_type: str,
    ) -> Optional[SubscriptionRecord]:
        """
        Продлевает подписку; payment_id исходного платежа не меняется.
        None, если подписка уже выключена.
        """
        row = await conn.fetchrow(
            f"""
            UPDATE subscriptions
            SET end_date = $2, plan_type = $3
            WHERE id = $1 AND is_active = TRUE
            RETURNING {SUBSCRIPTION_COLUMNS}
            """,
            subscription_id, end_date, plan_type
        )
        return dict(row) if row else None  # type: ignore

    async def get_current(self, user_id: str, channel_id: str, now: datetime) -> Optional[SubscriptionRecord]:
        """Действующая подписка пользователя (самая поздняя по end_date)"""
        async with self._connection() as conn:
            rows = await self.list_active(conn, user_id, channel_id, now)
            return rows[0] if rows else None

    async def has_active(self, user_id: str, channel_id: str, now: datetime) -> bool:
        """Проверяет наличие активной подписки"""
        return await self.get_current(user_id, channel_id, now) is not None

    async def list_expired(self, now: datetime) -> list[ExpiredSubscription]:
        """Активные подписки с истекшим сроком вместе с Telegram ID владельца"""
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT s.id, s.user_id, s.channel_id, s.plan_type, s.start_date, s.end_date,
                       s.is_active, s.payment_id, s.created_at, u.telegram_id
                FROM subscriptions s
                JOIN users u ON u.id = s.user_id
                WHERE s.is_active = TRUE AND s.end_date < $1
                ORDER BY s.end_date
                """,
                now
            )
            return [dict(row) for row in rows]  # type: ignore

    async def deactivate(self, subscription_id: str, now: datetime) -> bool:
        """Выключает подписку, если она все еще активна и истекла"""
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE subscriptions
                SET is_active = FALSE
                WHERE id = $1 AND is_active = TRUE AND end_date < $2
                """,
                subscription_id, now
            )
            return result != "UPDATE 0"
