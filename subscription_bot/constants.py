from datetime import timedelta, timezone
from decimal import Decimal

# Тарифы по умолчанию: цена за каждый способ оплаты.
# Переопределяются через PLAN_PRICES (JSON) в окружении.
DEFAULT_PLAN_PRICES = {
    "DAY": {"TELEGRAM_STARS": 399, "CRYPTO_TRX": 10, "CRYPTO_USDT": 10},
    "WEEK": {"TELEGRAM_STARS": 599, "CRYPTO_TRX": 60, "CRYPTO_USDT": 19},
    "MONTH": {"TELEGRAM_STARS": 2500, "CRYPTO_TRX": 200, "CRYPTO_USDT": 50},
}

# Длительности подписок в секундах (PLAN_DURATIONS)
DEFAULT_PLAN_DURATIONS = {
    "DAY": int(timedelta(days=1).total_seconds()),
    "WEEK": int(timedelta(days=7).total_seconds()),
    "MONTH": int(timedelta(days=30).total_seconds()),
}

# Названия тарифов для пользователей
PLAN_TITLES = {
    "DAY": "сутки",
    "WEEK": "неделю",
    "MONTH": "месяц",
}

# Валюты способов оплаты
METHOD_CURRENCIES = {
    "TELEGRAM_STARS": "XTR",
    "CRYPTO_TRX": "TRX",
    "CRYPTO_USDT": "USDT",
}

# Время жизни неоплаченного счёта
STARS_INVOICE_TTL = timedelta(minutes=30)
CRYPTO_INVOICE_TTL = timedelta(hours=1)

# Допуск при сравнении суммы перевода (в единицах актива)
AMOUNT_TOLERANCE = Decimal("0.01")

# USDT TRC20
USDT_TRC20_CONTRACT = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"
SUN_PER_TRX = Decimal(1_000_000)

MOSCOW_TZ = timezone(timedelta(hours=3))

# Интервалы фоновых задач (секунды)
POLL_INTERVAL_SECONDS = 30
PAYMENT_EXPIRY_INTERVAL_SECONDS = 300
SUBSCRIPTION_EXPIRY_INTERVAL_SECONDS = 3600
CACHE_CLEAR_INTERVAL_SECONDS = 3600

# Пауза между запросами к провайдеру внутри одного прохода
SWEEP_DELAY_SECONDS = 0.5
PROVIDER_TIMEOUT_SECONDS = 15.0

# Кэш недавно обработанных транзакций
PROCESSED_CACHE_SIZE = 1000

# Одноразовая ссылка-приглашение
INVITE_LINK_TTL = timedelta(minutes=100)

# Статусы NOWPayments для пользователя
PROVIDER_STATUS_LABELS = {
    "waiting": "Ожидает оплаты",
    "confirming": "Подтверждается в блокчейне",
    "confirmed": "Подтверждено, обрабатывается",
    "sending": "Отправляется",
    "partially_paid": "Частично оплачено",
    "finished": "Завершено",
    "failed": "Неудачно",
    "refunded": "Возвращено",
    "expired": "Истекло",
}
