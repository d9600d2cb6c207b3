"""Атомарное завершение платежа: платеж -> COMPLETED и выдача/продление подписки"""
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

import asyncpg

from subscription_bot.db.pool import transaction
from subscription_bot.db.repositories.payments import PaymentRepository
from subscription_bot.db.repositories.subscriptions import SubscriptionRepository
from subscription_bot.db.repositories.users import UserRepository
from subscription_bot.errors import DuplicateReferenceError, SubscriptionChangedError
from subscription_bot.models.subscription import CompletionResult, ExtensionAction
from subscription_bot.services.extension import calculate_extension
from subscription_bot.services.plans import PlanCatalog

logger = logging.getLogger(__name__)

COMPLETION_ATTEMPTS = 3


class CompletionNotifier(Protocol):
    async def payment_completed(self, telegram_id: int, result: CompletionResult) -> bool: ...


class PaymentCompleter:
    """
    Единственное место, где платеж переходит в COMPLETED.

    Внутри одной транзакции:
        1. блокировка платежа, если он еще PENDING (иначе - уже обработан)
        2. блокировка пользователя
        3. PENDING -> COMPLETED с charge_id или tx_hash
        4. чтение действующих подписок с блокировкой строк
        5. расчет продления
        6. новая подписка или продление существующей
    Если продлеваемая подписка успела выключиться, транзакция откатывается
    и выполняется заново (не больше COMPLETION_ATTEMPTS раз).
    Уведомление отправляется после коммита и на результат не влияет.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        payments: PaymentRepository,
        subscriptions: SubscriptionRepository,
        users: UserRepository,
        catalog: PlanCatalog,
        channel_id: str,
        notifier: Optional[CompletionNotifier] = None,
    ):
        self.pool = pool
        self.payments = payments
        self.subscriptions = subscriptions
        self.users = users
        self.catalog = catalog
        self.channel_id = channel_id
        self.notifier = notifier

    async def complete(
        self,
        payment_id: str,
        *,
        charge_id: Optional[str] = None,
        tx_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[CompletionResult]:
        """
        Завершает платеж и выдает подписку.

        Returns:
            CompletionResult или None, если платеж уже обработан
            (не PENDING, либо charge_id/tx_hash записан на другой платеж)
        """
        try:
            result = await self._complete_with_retries(payment_id, charge_id, tx_hash, now)
        except DuplicateReferenceError as e:
            logger.info(f"ℹ️ Платеж {payment_id} пропущен: {e}")
            return None

        if result is None:
            logger.info(f"ℹ️ Платеж {payment_id} уже обработан")
            return None

        action = "продлена" if result.extended else "создана"
        logger.info(
            f"✅ Платеж {payment_id} завершен, подписка {action} до "
            f"{result.subscription['end_date'].isoformat()}"
        )
        await self._notify(result)
        return result

    async def _complete_with_retries(
        self,
        payment_id: str,
        charge_id: Optional[str],
        tx_hash: Optional[str],
        now: Optional[datetime],
    ) -> Optional[CompletionResult]:
        for attempt in range(1, COMPLETION_ATTEMPTS + 1):
            try:
                return await self._complete_in_transaction(payment_id, charge_id, tx_hash, now)
            except SubscriptionChangedError as e:
                if attempt == COMPLETION_ATTEMPTS:
                    raise
                logger.warning(f"⚠️ Платеж {payment_id}: {e}, повтор транзакции (попытка {attempt + 1})")
        return None

    async def _complete_in_transaction(
        self,
        payment_id: str,
        charge_id: Optional[str],
        tx_hash: Optional[str],
        now: Optional[datetime],
    ) -> Optional[CompletionResult]:
        async with transaction(self.pool) as conn:
            payment = await self.payments.lock_pending(conn, payment_id)
            if payment is None:
                return None

            await self.users.lock(conn, payment["user_id"])

            completed = await self.payments.mark_completed(conn, payment_id, charge_id=charge_id, tx_hash=tx_hash)
            if completed is None:
                return None

            # Момент берется после получения блокировок
            moment = now or datetime.now(timezone.utc)
            duration = self.catalog.duration(payment["plan_type"])
            active = await self.subscriptions.list_active(
                conn, payment["user_id"], self.channel_id, moment, lock=True
            )
            decision = calculate_extension(
                active,
                plan_type=payment["plan_type"],
                duration=duration,
                now=moment,
                payment_id=payment_id,
            )

            if decision.action is ExtensionAction.EXTEND:
                subscription = await self.subscriptions.extend(
                    conn, decision.subscription_id, end_date=decision.end_date, plan_type=decision.plan_type
                )
                if subscription is None:
                    # Откат отменяет и отметку COMPLETED
                    raise SubscriptionChangedError(f"подписка {decision.subscription_id} выключена до продления")
            else:
                subscription = await self.subscriptions.create(
                    conn,
                    user_id=payment["user_id"],
                    channel_id=self.channel_id,
                    plan_type=decision.plan_type,
                    start_date=decision.start_date,
                    end_date=decision.end_date,
                    payment_id=payment_id,
                )

        return CompletionResult(payment=completed, subscription=subscription, decision=decision)

    async def _notify(self, result: CompletionResult) -> None:
        if self.notifier is None:
            return
        try:
            user = await self.users.get(result.payment["user_id"])
            if user is None:
                return
            await self.notifier.payment_completed(user["telegram_id"], result)
        except Exception as e:
            logger.error(f"Не удалось уведомить о платеже {result.payment['id']}: {e}")
