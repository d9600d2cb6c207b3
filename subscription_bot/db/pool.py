import asyncpg
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional
import logging

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_pool: Optional[asyncpg.Pool] = None


async def init_pool(database_url: str) -> asyncpg.Pool:
    """Инициализирует пул соединений с PostgreSQL"""
    global _pool
    _pool = await asyncpg.create_pool(
        database_url,
        min_size=1,
        max_size=10,
        command_timeout=60
    )
    logger.info("✅ Подключение к базе данных установлено")
    return _pool


async def init_schema(pool: asyncpg.Pool) -> None:
    """Создает таблицы, если их еще нет"""
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
    logger.info("📐 Схема базы данных готова")


async def close_pool() -> None:
    """Закрывает пул соединений"""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("🔒 Соединение с базой данных закрыто")


def get_pool() -> asyncpg.Pool:
    """Получает текущий пул соединений"""
    if _pool is None:
        raise RuntimeError("Database pool не инициализирован")
    return _pool


@asynccontextmanager
async def transaction(pool: asyncpg.Pool) -> AsyncIterator[asyncpg.Connection]:
    """Открывает транзакцию (READ COMMITTED) на отдельном соединении из пула"""
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn
