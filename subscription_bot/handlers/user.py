import asyncio
import logging
from aiogram import F, Router
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import Command
from aiogram.types import (
    CallbackQuery,
    ChatJoinRequest,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    Message,
    PreCheckoutQuery,
)

from subscription_bot.constants import PROVIDER_STATUS_LABELS
from subscription_bot.db.repositories.users import UserRepository
from subscription_bot.errors import GatewayError, LatePaymentError, PaymentError
from subscription_bot.models.payment import PaymentIntent, PaymentMethod, PaymentRecord, PaymentStatus
from subscription_bot.services.access import ChannelAccessController
from subscription_bot.services.gateways.registry import GatewayMap, gateway_for
from subscription_bot.services.notifications import format_datetime_moscow, plans_keyboard
from subscription_bot.services.plans import PlanCatalog
from subscription_bot.services.reconciliation import Outcome, ReconciliationEngine

logger = logging.getLogger(__name__)

user_router = Router()

FAILED_STATUSES = (PaymentStatus.FAILED.value, PaymentStatus.EXPIRED.value)

METHOD_BUTTONS = {
    PaymentMethod.TELEGRAM_STARS: "⭐ Telegram Stars",
    PaymentMethod.CRYPTO_TRX: "💎 TRX (TRON)",
    PaymentMethod.CRYPTO_USDT: "💵 USDT (TRC20)",
}


def methods_keyboard(catalog: PlanCatalog, gateways: GatewayMap, plan: str) -> InlineKeyboardMarkup:
    """Способы оплаты тарифа с ценой"""
    rows = []
    for method, text in METHOD_BUTTONS.items():
        if method not in gateways or not catalog.supports(plan, method):
            continue
        price = catalog.price(plan, method)
        rows.append([InlineKeyboardButton(
            text=f"{text} - {price.normalize():f} {catalog.currency(method)}",
            callback_data=f"pay_{plan}_{method.value}",
        )])
    rows.append([InlineKeyboardButton(text="⬅️ Назад", callback_data="back_to_plans")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def crypto_payment_keyboard(intent: PaymentIntent) -> InlineKeyboardMarkup:
    """Кнопки под счётом: проверка оплаты и инструкция"""
    payment_id = intent.payment["id"]
    rows = []
    if intent.invoice_url:
        rows.append([InlineKeyboardButton(text="💳 Открыть счёт", url=intent.invoice_url)])
    rows.append([InlineKeyboardButton(text="🔄 Проверить платеж", callback_data=f"check_payment_{payment_id}")])
    rows.append([InlineKeyboardButton(text="ℹ️ Инструкция по оплате", callback_data=f"payment_info_{payment_id}")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def payment_instructions(payment: PaymentRecord) -> str:
    """Инструкция по переводу TRX/USDT в сети TRON"""
    currency = payment["currency"]
    network = "USDT TRON (TRC20)" if currency == "USDT" else "TRX (TRON)"
    amount = (payment["expected_amount"] or payment["amount"]).normalize()
    return (
        f"ℹ️ <b>Как оплатить подписку</b>\n\n"
        f"1. Откройте криптовалютный кошелек\n"
        f"2. Выберите {network}\n"
        f"3. Скопируйте адрес: <code>{payment['crypto_address']}</code>\n"
        f"4. Укажите точную сумму: <code>{amount:f}</code> {currency}\n"
        f"5. Отправьте перевод\n"
        f"6. Нажмите «🔄 Проверить платеж» или отправьте /check\n\n"
        f"⚠️ <b>Важно:</b>\n"
        f"• Используйте только сеть TRON, переводы из других сетей не будут найдены\n"
        f"• Сумма должна совпадать точно, комиссия сети оплачивается отдельно\n"
        f"• Счёт действует до {format_datetime_moscow(payment['expires_at'])} (МСК)\n\n"
        f"💼 Подойдут кошельки TronLink, Trust Wallet, Atomic Wallet "
        f"или вывод с биржи (Binance, HTX, OKX)"
    )


@user_router.message(Command("start"))
async def cmd_start(message: Message, users: UserRepository, access: ChannelAccessController, catalog: PlanCatalog):
    """Команда /start - регистрация и выбор тарифа"""
    if not message.from_user:
        return

    tg_user = message.from_user
    await users.get_or_create(tg_user.id, tg_user.username, tg_user.first_name, tg_user.last_name)

    sub = await access.current_subscription(tg_user.id)
    if sub:
        await message.answer(
            f"✅ У вас есть активная подписка\n"
            f"📅 Действует до: {format_datetime_moscow(sub['end_date'])} (МСК)\n\n"
            f"Продлить подписку:",
            reply_markup=plans_keyboard(catalog)
        )
        return

    await message.answer(
        "👋 Добро пожаловать!\n\n"
        "Для доступа к закрытому каналу необходима подписка.\n\n"
        "💳 <b>Выберите тариф:</b>",
        reply_markup=plans_keyboard(catalog),
        parse_mode="HTML"
    )


@user_router.callback_query(F.data.startswith("plan_"))
async def choose_plan(callback: CallbackQuery, catalog: PlanCatalog, gateways: GatewayMap):
    """Выбран тариф - показываем способы оплаты"""
    await callback.answer()
    plan = callback.data.removeprefix("plan_")
    try:
        title = catalog.title(plan)
    except PaymentError as e:
        await callback.message.answer(f"❌ {e}")
        return

    await callback.message.edit_text(
        f"📅 Подписка на {title}\n\nВыберите способ оплаты:",
        reply_markup=methods_keyboard(catalog, gateways, catalog.resolve(plan).value)
    )


@user_router.callback_query(F.data == "back_to_plans")
async def back_to_plans(callback: CallbackQuery, catalog: PlanCatalog):
    await callback.answer()
    await callback.message.edit_text("💳 Выберите тариф:", reply_markup=plans_keyboard(catalog))


@user_router.callback_query(F.data.startswith("pay_"))
async def process_payment(callback: CallbackQuery, users: UserRepository, gateways: GatewayMap):
    """Создание счёта выбранным способом"""
    await callback.answer()

    # pay_WEEK_CRYPTO_TRX
    parts = callback.data.split("_", 2)
    if len(parts) != 3:
        await callback.message.answer("❌ Ошибка: неверный формат данных")
        return
    _, plan, method_value = parts

    tg_user = callback.from_user
    user = await users.get_or_create(tg_user.id, tg_user.username, tg_user.first_name, tg_user.last_name)

    try:
        method = PaymentMethod(method_value)
        intent = await gateway_for(gateways, method).create_intent(user, plan, method)
    except ValueError:
        await callback.message.answer("❌ Неизвестный способ оплаты")
        return
    except GatewayError as e:
        logger.error(f"Ошибка создания платежа для {tg_user.id}: {e}")
        text = "⏳ Платежный сервис временно недоступен, попробуйте позже." if e.retryable \
            else "❌ Не удалось создать счёт. Попробуйте другой способ оплаты."
        await callback.message.answer(text)
        return
    except PaymentError as e:
        await callback.message.answer(f"❌ {e}")
        return

    if method is PaymentMethod.TELEGRAM_STARS:
        # Счёт уже отправлен ботом
        return

    text = (
        f"💰 <b>Счёт на оплату создан</b>\n\n"
        f"💵 Сумма: <code>{intent.pay_amount.normalize():f}</code> {intent.pay_currency}\n"
        f"📬 Адрес: <code>{intent.pay_to}</code>\n\n"
        f"⚠️ Отправьте точную сумму одним переводом. Счёт действует 1 час.\n"
        f"После перевода доступ будет выдан автоматически, проверить вручную: /check"
    )
    await callback.message.answer(text, reply_markup=crypto_payment_keyboard(intent), parse_mode="HTML")


@user_router.message(Command("check"))
async def cmd_check(message: Message, users: UserRepository, engine: ReconciliationEngine):
    """Ручная проверка последнего крипто-платежа"""
    if not message.from_user:
        return

    user = await users.get_by_telegram_id(message.from_user.id)
    if user is None:
        await message.answer("❌ Нет ожидающих платежей. Начните с /start")
        return

    try:
        check = await engine.check_payment(user["id"])
    except GatewayError as e:
        logger.error(f"Ошибка /check для {message.from_user.id}: {e}")
        await message.answer("⏳ Не удалось получить статус платежа, попробуйте позже.")
        return
    except asyncio.TimeoutError:
        await message.answer("⏳ Платежный сервис не ответил, попробуйте позже.")
        return

    if check is None:
        await message.answer("❌ Нет ожидающих платежей")
        return

    if check.outcome in (Outcome.COMPLETED, Outcome.FAILED):
        # Итог пользователю отправляет NotificationService
        return

    label = PROVIDER_STATUS_LABELS.get(check.status.status.value, check.status.label)
    await message.answer(
        f"⏳ Статус платежа: {label}\n"
        f"💵 Ожидаемая сумма: {check.payment['expected_amount'] or check.payment['amount']} "
        f"{check.payment['currency']}"
    )


@user_router.callback_query(F.data.startswith("check_payment_"))
async def check_payment_button(callback: CallbackQuery, users: UserRepository, engine: ReconciliationEngine,
                               access: ChannelAccessController):
    """Кнопка под счётом: проверяем платеж и обновляем то же сообщение"""
    payment_id = callback.data.removeprefix("check_payment_")
    user = await users.get_by_telegram_id(callback.from_user.id)
    if user is None:
        await callback.answer("❌ Платеж не найден", show_alert=True)
        return
    await callback.answer("🔄 Проверяем платеж...")

    try:
        check = await engine.check_payment(user["id"], payment_id)
    except (GatewayError, asyncio.TimeoutError) as e:
        logger.error(f"Ошибка проверки платежа {payment_id} для {callback.from_user.id}: {e}")
        await callback.message.answer("⏳ Не удалось получить статус платежа, попробуйте позже.")
        return

    if check is None:
        await callback.message.answer("❌ Платеж не найден")
        return

    keyboard = None
    if check.outcome is Outcome.COMPLETED:
        # Ссылку на канал уже отправил NotificationService
        text = "✅ Платеж подтвержден! Подписка активирована."
    elif check.outcome is Outcome.FAILED or check.payment["status"] in FAILED_STATUSES:
        text = "❌ Платеж не прошел. Попробуйте создать новый платеж командой /start"
    elif check.payment["status"] == PaymentStatus.COMPLETED.value:
        text = "✅ Платеж подтвержден! Подписка активирована."
        invite_link = await access.create_invite_link()
        if invite_link:
            keyboard = InlineKeyboardMarkup(inline_keyboard=[
                [InlineKeyboardButton(text="🔗 Перейти в канал", url=invite_link)]
            ])
    else:
        label = PROVIDER_STATUS_LABELS.get(check.status.status.value, check.status.label)
        text = f"⏳ Статус платежа: {label}\n\nПопробуйте проверить через несколько минут."
        keyboard = InlineKeyboardMarkup(inline_keyboard=[
            [InlineKeyboardButton(text="🔄 Проверить еще раз", callback_data=f"check_payment_{payment_id}")]
        ])

    try:
        await callback.message.edit_text(text, reply_markup=keyboard)
    except TelegramBadRequest:
        # message is not modified: статус не изменился с прошлой проверки
        pass


@user_router.callback_query(F.data.startswith("payment_info_"))
async def payment_info(callback: CallbackQuery, users: UserRepository, engine: ReconciliationEngine):
    """Пошаговая инструкция по оплате криптовалютой"""
    await callback.answer()
    payment_id = callback.data.removeprefix("payment_info_")
    user = await users.get_by_telegram_id(callback.from_user.id)
    payment = await engine.payments.get(payment_id)
    if user is None or payment is None or payment["user_id"] != user["id"]:
        await callback.message.answer("❌ Платеж не найден")
        return

    await callback.message.answer(payment_instructions(payment), parse_mode="HTML")


@user_router.message(Command("mystatus"))
async def cmd_mystatus(message: Message, access: ChannelAccessController):
    """Команда проверки статуса подписки"""
    if not message.from_user:
        return

    sub = await access.current_subscription(message.from_user.id)
    if sub:
        await message.answer(
            f"✅ У вас есть активная подписка\n"
            f"📅 Действует до: {format_datetime_moscow(sub['end_date'])} (МСК)"
        )
    else:
        await message.answer("❌ У вас нет активной подписки\n\nОформить: /start")


@user_router.pre_checkout_query()
async def pre_checkout(query: PreCheckoutQuery, engine: ReconciliationEngine):
    """Подтверждение Stars платежа перед списанием"""
    error = await engine.validate_pre_checkout(query.invoice_payload, query.total_amount, query.currency)
    if error:
        logger.warning(f"pre_checkout отклонен ({query.invoice_payload}): {error}")
        await query.answer(ok=False, error_message=error)
        return
    await query.answer(ok=True)


@user_router.message(F.successful_payment)
async def successful_payment(message: Message, engine: ReconciliationEngine):
    """Stars списаны - завершаем платеж"""
    payment = message.successful_payment
    logger.info(
        f"⭐ Stars платеж от {message.from_user.id}: payload={payment.invoice_payload}, "
        f"charge_id={payment.telegram_payment_charge_id}"
    )
    try:
        result = await engine.complete_stars_payment(
            payment.invoice_payload,
            payment.telegram_payment_charge_id,
            message.from_user.id,
        )
    except LatePaymentError as e:
        refund_text = (
            "Звезды возвращены на ваш баланс." if e.refunded
            else "Мы вернем звезды вручную, администратор уже уведомлен."
        )
        await message.answer(f"⚠️ Счёт истек до оплаты, подписка не оформлена.\n{refund_text}")
        return
    if result is None:
        await message.answer("ℹ️ Этот платеж уже обработан.")


@user_router.chat_join_request()
async def join_request(request: ChatJoinRequest, access: ChannelAccessController, users: UserRepository,
                       catalog: PlanCatalog):
    """Заявка на вступление в канал"""
    tg_user = request.from_user
    if await access.handle_join_request(tg_user.id):
        await request.bot.send_message(
            tg_user.id, "✅ Добро пожаловать! Ваша подписка активна, доступ к каналу предоставлен."
        )
        return

    await users.get_or_create(tg_user.id, tg_user.username, tg_user.first_name, tg_user.last_name)
    await request.bot.send_message(
        tg_user.id,
        "❌ Для доступа к каналу необходима подписка.\n\nВыберите тариф:",
        reply_markup=plans_keyboard(catalog)
    )
