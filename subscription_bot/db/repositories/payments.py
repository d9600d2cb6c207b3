"""Репозиторий для работы с платежами"""
import asyncpg
from typing import Iterable, Optional
from decimal import Decimal
from datetime import datetime
from uuid import uuid4

from subscription_bot.db.repositories.base import BaseRepository
from subscription_bot.errors import DuplicateReferenceError
from subscription_bot.models.payment import PaymentMethod, PaymentRecord, PaymentStatus

PAYMENT_COLUMNS = """
    id, user_id, amount, currency, plan_type, payment_type, status,
    invoice_payload, telegram_payment_charge_id, crypto_address, crypto_tx_hash,
    expected_amount, expires_at, created_at, updated_at
"""


class PaymentRepository(BaseRepository):
    """Репозиторий для работы с платежами"""

    async def create(
        self,
        *,
        user_id: str,
        amount: Decimal,
        currency: str,
        plan_type: str,
        method: PaymentMethod,
        expires_at: datetime,
        invoice_payload: Optional[str] = None,
        crypto_address: Optional[str] = None,
        expected_amount: Optional[Decimal] = None,
        conn: Optional[asyncpg.Connection] = None,
    ) -> PaymentRecord:
        """
        Создать новый платеж в статусе PENDING

        Args:
            user_id: внутренний ID пользователя
            amount: сумма по тарифу
            currency: XTR, TRX или USDT
            plan_type: DAY, WEEK, MONTH
            method: способ оплаты
            expires_at: когда неоплаченный счёт считается просроченным
            invoice_payload: уникальный payload счёта (Stars) или ID счёта провайдера
            crypto_address: адрес для перевода
            expected_amount: ожидаемая сумма перевода
            conn: соединение открытой транзакции

        Returns:
            Созданная запись платежа
        """
        async with self._connection(conn) as c:
            try:
                row = await c.fetchrow(
                    f"""
                    INSERT INTO payments (
                        id, user_id, amount, currency, plan_type, payment_type, status,
                        invoice_payload, crypto_address, expected_amount, expires_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, 'PENDING', $7, $8, $9, $10)
                    RETURNING {PAYMENT_COLUMNS}
                    """,
                    str(uuid4()), user_id, amount, currency, plan_type, method.value,
                    invoice_payload, crypto_address, expected_amount, expires_at
                )
            except asyncpg.UniqueViolationError as e:
                raise DuplicateReferenceError(invoice_payload) from e
            return dict(row)  # type: ignore

    async def attach_provider_reference(
        self,
        payment_id: str,
        *,
        invoice_payload: Optional[str] = None,
        crypto_address: Optional[str] = None,
        expected_amount: Optional[Decimal] = None,
        conn: Optional[asyncpg.Connection] = None,
    ) -> PaymentRecord:
        """Сохранить данные счёта, выставленного провайдером"""
        async with self._connection(conn) as c:
            try:
                row = await c.fetchrow(
                    f"""
                    UPDATE payments
                    SET invoice_payload = COALESCE($2, invoice_payload),
                        crypto_address = COALESCE($3, crypto_address),
                        expected_amount = COALESCE($4, expected_amount),
                        updated_at = now()
                    WHERE id = $1
                    RETURNING {PAYMENT_COLUMNS}
                    """,
                    payment_id, invoice_payload, crypto_address, expected_amount
                )
            except asyncpg.UniqueViolationError as e:
                raise DuplicateReferenceError(invoice_payload) from e
            return dict(row)  # type: ignore

    async def get(self, payment_id: str, conn: Optional[asyncpg.Connection] = None) -> Optional[PaymentRecord]:
        """Получить платеж по ID"""
        async with self._connection(conn) as c:
            row = await c.fetchrow(f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE id = $1", payment_id)
            return dict(row) if row else None  # type: ignore

    async def get_by_invoice_payload(self, invoice_payload: str) -> Optional[PaymentRecord]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE invoice_payload = $1",
                invoice_payload
            )
            return dict(row) if row else None  # type: ignore

    async def get_by_tx_hash(self, tx_hash: str) -> Optional[PaymentRecord]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE crypto_tx_hash = $1",
                tx_hash
            )
            return dict(row) if row else None  # type: ignore

    async def lock_pending(self, conn: asyncpg.Connection, payment_id: str) -> Optional[PaymentRecord]:
        """
        Заблокировать платеж до конца транзакции, если он еще PENDING.

        Конкурирующая транзакция ждет блокировку и после коммита первой
        видит уже не-PENDING строку, т.е. получает None.
        """
        row = await conn.fetchrow(
            f"""
            SELECT {PAYMENT_COLUMNS} FROM payments
            WHERE id = $1 AND status = 'PENDING'
            FOR UPDATE
            """,
            payment_id
        )
        return dict(row) if row else None  # type: ignore

    async def mark_completed(
        self,
        conn: asyncpg.Connection,
        payment_id: str,
        *,
        charge_id: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> Optional[PaymentRecord]:
        """
        PENDING -> COMPLETED с внешним идентификатором подтверждения

        Raises:
            DuplicateReferenceError: charge_id или tx_hash уже записан на другой платеж
        """
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE payments
                SET status = 'COMPLETED',
                    telegram_payment_charge_id = COALESCE($2, telegram_payment_charge_id),
                    crypto_tx_hash = COALESCE($3, crypto_tx_hash),
                    updated_at = now()
                WHERE id = $1 AND status = 'PENDING'
                RETURNING {PAYMENT_COLUMNS}
                """,
                payment_id, charge_id, tx_hash
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateReferenceError(charge_id or tx_hash) from e
        return dict(row) if row else None  # type: ignore

    async def mark_failed(self, payment_id: str) -> bool:
        """Отметить платеж как неудавшийся (только из PENDING)"""
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE payments
                SET status = 'FAILED', updated_at = now()
                WHERE id = $1 AND status = 'PENDING'
                """,
                payment_id
            )
            return result != "UPDATE 0"

    async def expire_stale(self, now: datetime) -> int:
        """Перевести просроченные PENDING платежи в EXPIRED, вернуть количество"""
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE payments
                SET status = 'EXPIRED', updated_at = now()
                WHERE status = 'PENDING' AND expires_at < $1
                """,
                now
            )
            # Извлекаем число из "UPDATE N"
            return int(result.split()[-1])

    async def list_pending(self, methods: Iterable[PaymentMethod], now: datetime) -> list[PaymentRecord]:
        """PENDING платежи указанных способов, срок которых еще не вышел"""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {PAYMENT_COLUMNS} FROM payments
                WHERE status = 'PENDING'
                  AND payment_type = ANY($1::text[])
                  AND expires_at >= $2
                ORDER BY created_at
                """,
                [m.value for m in methods], now
            )
            return [dict(row) for row in rows]  # type: ignore

    async def latest_pending_for_user(
        self,
        user_id: str,
        methods: Iterable[PaymentMethod],
    ) -> Optional[PaymentRecord]:
        """Последний PENDING платеж пользователя"""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {PAYMENT_COLUMNS} FROM payments
                WHERE user_id = $1
                  AND status = $2
                  AND payment_type = ANY($3::text[])
                ORDER BY created_at DESC
                LIMIT 1
                """,
                user_id, PaymentStatus.PENDING.value, [m.value for m in methods]
            )
            return dict(row) if row else None  # type: ignore
