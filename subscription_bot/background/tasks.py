import asyncio
import logging
from typing import Awaitable, Callable

from subscription_bot.constants import (
    CACHE_CLEAR_INTERVAL_SECONDS,
    PAYMENT_EXPIRY_INTERVAL_SECONDS,
    SUBSCRIPTION_EXPIRY_INTERVAL_SECONDS,
)
from subscription_bot.services.expiry import ExpiryService
from subscription_bot.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


async def periodic(name: str, interval: float, job: Callable[[], Awaitable[object]]) -> None:
    """Запускает job каждые interval секунд; ошибка одного прохода не останавливает цикл"""
    logger.info(f"🔄 Запущена фоновая задача: {name}")
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Ошибка в задаче {name}: {e}")
    except asyncio.CancelledError:
        logger.info(f"🛑 Задача {name} остановлена")
        raise


def start_background_tasks(
    engine: ReconciliationEngine,
    expiry: ExpiryService,
    poll_interval: float,
) -> list[asyncio.Task]:
    """Опрос крипто-платежей, просрочка счетов, истечение подписок, сброс кэша"""
    jobs = [
        ("опрос крипто-платежей", poll_interval, engine.poll_pending),
        ("просрочка платежей", PAYMENT_EXPIRY_INTERVAL_SECONDS, expiry.expire_payments),
        ("истечение подписок", SUBSCRIPTION_EXPIRY_INTERVAL_SECONDS, expiry.expire_subscriptions),
        ("очистка кэша транзакций", CACHE_CLEAR_INTERVAL_SECONDS, _async(engine.clear_cache)),
    ]
    return [asyncio.create_task(periodic(name, interval, job)) for name, interval, job in jobs]


def _async(func: Callable[[], object]) -> Callable[[], Awaitable[object]]:
    async def wrapper():
        return func()
    return wrapper


async def stop_background_tasks(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    logger.info("✅ Фоновые задачи завершены")
