import asyncio
from aiogram import Bot, Dispatcher
from aiohttp import web

from subscription_bot.config import config, logger
from subscription_bot.db.pool import init_pool, init_schema, close_pool
from subscription_bot.db.repositories.payments import PaymentRepository
from subscription_bot.db.repositories.subscriptions import SubscriptionRepository
from subscription_bot.db.repositories.users import UserRepository
from subscription_bot.clients.nowpayments import NowPaymentsClient
from subscription_bot.clients.trongrid import TronGridClient
from subscription_bot.handlers.user import user_router
from subscription_bot.background.tasks import start_background_tasks, stop_background_tasks
from subscription_bot.services.access import ChannelAccessController
from subscription_bot.services.completion import PaymentCompleter
from subscription_bot.services.expiry import ExpiryService
from subscription_bot.services.gateways.registry import build_gateways
from subscription_bot.services.notifications import NotificationService
from subscription_bot.services.plans import PlanCatalog
from subscription_bot.services.reconciliation import ReconciliationEngine
from subscription_bot.webhook.nowpayments_webhook import create_webhook_app


async def main():
    """Главная функция запуска бота"""
    logger.info("🚀 Запуск бота подписок...")

    # Инициализация базы данных
    pool = await init_pool(config.database_url)
    await init_schema(pool)

    bot = Bot(token=config.telegram_bot_token)
    dp = Dispatcher()

    catalog = PlanCatalog(config.plan_prices, config.plan_durations)
    users = UserRepository(pool)
    payments = PaymentRepository(pool)
    subscriptions = SubscriptionRepository(pool)

    access = ChannelAccessController(bot, config.channel_id, subscriptions, users, config.channel_username)
    notifications = NotificationService(bot, access, catalog, admin_ids=config.admin_chat_ids)

    # Внешние провайдеры: только клиент выбранной стратегии
    nowpayments = None
    trongrid = None
    if config.crypto_strategy == "invoice":
        nowpayments = NowPaymentsClient(
            config.nowpayments_api_key,
            config.nowpayments_ipn_secret,
            config.nowpayments_api_url,
            timeout=config.provider_timeout_seconds,
        )
        if not await nowpayments.check_api_status():
            logger.warning("⚠️ NOWPayments API недоступен, счета будут создаваться с ошибкой")
    else:
        trongrid = TronGridClient(
            config.trongrid_api_url,
            config.trongrid_api_key,
            timeout=config.provider_timeout_seconds,
        )

    gateways = build_gateways(
        pool=pool,
        payments=payments,
        catalog=catalog,
        bot=bot,
        crypto_strategy=config.crypto_strategy,
        nowpayments=nowpayments,
        trongrid=trongrid,
        wallet_address=config.crypto_wallet_address,
        usdt_contract=config.usdt_contract_address,
        base_url=config.base_url,
    )
    completer = PaymentCompleter(
        pool, payments, subscriptions, users, catalog, config.channel_id, notifier=notifications
    )
    engine = ReconciliationEngine(
        payments,
        users,
        completer,
        gateways,
        notifier=notifications,
        sweep_delay=config.sweep_delay_seconds,
        provider_timeout=config.provider_timeout_seconds,
        stars_refund_after_grant=config.stars_refund_after_grant,
    )
    expiry = ExpiryService(payments, subscriptions, access, config.channel_id, notifier=notifications)

    # Зависимости для хендлеров
    dp["users"] = users
    dp["catalog"] = catalog
    dp["gateways"] = gateways
    dp["engine"] = engine
    dp["access"] = access
    dp.include_router(user_router)

    # Webhook сервер (NOWPayments IPN, страницы возврата, health)
    runner = web.AppRunner(create_webhook_app(engine))
    await runner.setup()
    site = web.TCPSite(runner, config.webhook_host, config.webhook_port)
    await site.start()
    logger.info(f"🌐 Webhook сервер запущен на {config.webhook_host}:{config.webhook_port}")

    tasks = start_background_tasks(engine, expiry, config.poll_interval_seconds)

    logger.info(f"✅ Бот инициализирован (крипто: {config.crypto_strategy})")
    logger.info(f"👤 Admin IDs: {', '.join(map(str, config.admin_chat_ids))}")

    try:
        # Запуск long polling
        await dp.start_polling(
            bot,
            skip_updates=True,
            allowed_updates=["message", "callback_query", "pre_checkout_query", "chat_join_request"],
        )
    finally:
        # Очистка ресурсов
        await stop_background_tasks(tasks)
        await runner.cleanup()
        for client in (nowpayments, trongrid):
            if client is not None:
                await client.close()
        await close_pool()
        await bot.session.close()
        logger.info("👋 Бот остановлен")


if __name__ == "__main__":
    asyncio.run(main())
