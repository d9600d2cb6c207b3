from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import asyncpg


class BaseRepository:
    """Общий предок репозиториев: пул + возможность работать внутри чужой транзакции"""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @asynccontextmanager
    async def _connection(self, conn: Optional[asyncpg.Connection] = None) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as acquired:
            yield acquired
