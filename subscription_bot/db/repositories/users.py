"""Репозиторий пользователей"""
from typing import Optional
from uuid import uuid4
import asyncpg

from subscription_bot.db.repositories.base import BaseRepository
from subscription_bot.models.user import UserRecord

USER_COLUMNS = "id, telegram_id, username, first_name, last_name, created_at, updated_at"


class UserRepository(BaseRepository):
    """Репозиторий для работы с пользователями"""

    async def get_or_create(
        self,
        telegram_id: int,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> UserRecord:
        """Создает пользователя при первом обращении, иначе обновляет отображаемые поля"""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO users (id, telegram_id, username, first_name, last_name)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (telegram_id) DO UPDATE
                SET username = EXCLUDED.username,
                    first_name = EXCLUDED.first_name,
                    last_name = EXCLUDED.last_name,
                    updated_at = now()
                RETURNING {USER_COLUMNS}
                """,
                str(uuid4()), telegram_id, username, first_name, last_name
            )
            return dict(row)  # type: ignore

    async def get(self, user_id: str, conn: Optional[asyncpg.Connection] = None) -> Optional[UserRecord]:
        async with self._connection(conn) as c:
            row = await c.fetchrow(f"SELECT {USER_COLUMNS} FROM users WHERE id = $1", user_id)
            return dict(row) if row else None  # type: ignore

    async def get_by_telegram_id(self, telegram_id: int) -> Optional[UserRecord]:
        async with self._connection() as conn:
            row = await conn.fetchrow(f"SELECT {USER_COLUMNS} FROM users WHERE telegram_id = $1", telegram_id)
            return dict(row) if row else None  # type: ignore

    async def lock(self, conn: asyncpg.Connection, user_id: str) -> None:
        """
        Блокирует строку пользователя до конца транзакции.

        Завершения платежей одного пользователя выполняются по очереди.
        """
        await conn.execute("SELECT id FROM users WHERE id = $1 FOR UPDATE", user_id)
