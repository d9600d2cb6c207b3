import json
from decimal import Decimal
import os
import logging
from typing import Literal, Optional
from pydantic import BaseModel, Field, field_validator
from dotenv import load_dotenv

from subscription_bot.constants import (
    DEFAULT_PLAN_DURATIONS,
    DEFAULT_PLAN_PRICES,
    POLL_INTERVAL_SECONDS,
    PROVIDER_TIMEOUT_SECONDS,
    SWEEP_DELAY_SECONDS,
    USDT_TRC20_CONTRACT,
)

# Загружаем переменные из .env файла (для локального запуска)
load_dotenv()


class Config(BaseModel):
    """Конфигурация бота с валидацией"""

    telegram_bot_token: str = Field(..., description="Telegram Bot API Token")
    database_url: str = Field(..., description="PostgreSQL connection URL")
    channel_id: str = Field(..., description="ID закрытого канала")
    channel_username: Optional[str] = Field(default=None, description="Username канала для запасной ссылки")
    admin_chat_ids: list[int] = Field(default_factory=list, description="List of admin Telegram IDs")

    # Крипто-оплата: ровно одна стратегия на инсталляцию
    crypto_strategy: Literal["ledger", "invoice"] = Field(default="ledger", description="ledger | invoice")
    crypto_wallet_address: Optional[str] = Field(default=None, description="TRON кошелек для приёма переводов")
    trongrid_api_url: str = Field(default="https://api.trongrid.io", description="TronGrid API URL")
    trongrid_api_key: Optional[str] = Field(default=None, description="TRON-PRO-API-KEY")
    usdt_contract_address: str = Field(default=USDT_TRC20_CONTRACT, description="USDT TRC20 contract")

    nowpayments_api_key: Optional[str] = Field(default=None, description="NOWPayments API key")
    nowpayments_ipn_secret: Optional[str] = Field(default=None, description="NOWPayments IPN secret")
    nowpayments_api_url: str = Field(default="https://api.nowpayments.io/v1", description="NOWPayments API URL")

    base_url: str = Field(default="http://localhost:8080", description="Публичный адрес webhook сервера")
    webhook_host: str = Field(default="0.0.0.0", description="Интерфейс webhook сервера")
    webhook_port: int = Field(default=8080, description="Порт webhook сервера")

    stars_refund_after_grant: bool = Field(default=False, description="Возвращать Stars после выдачи подписки")

    plan_prices: dict[str, dict[str, Decimal]] = Field(default_factory=lambda: DEFAULT_PLAN_PRICES)
    plan_durations: dict[str, int] = Field(default_factory=lambda: DEFAULT_PLAN_DURATIONS)

    poll_interval_seconds: float = Field(default=POLL_INTERVAL_SECONDS, gt=0)
    sweep_delay_seconds: float = Field(default=SWEEP_DELAY_SECONDS, ge=0)
    provider_timeout_seconds: float = Field(default=PROVIDER_TIMEOUT_SECONDS, gt=0)

    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator('admin_chat_ids', mode='before')
    @classmethod
    def parse_admin_ids(cls, v):
        """Парсит ADMIN_CHAT_ID из строки в список чисел"""
        if isinstance(v, str):
            return [int(id.strip()) for id in v.split(",") if id.strip()]
        return v

    @field_validator('plan_prices', 'plan_durations', mode='before')
    @classmethod
    def parse_json(cls, v):
        """PLAN_PRICES и PLAN_DURATIONS задаются JSON-строкой"""
        if isinstance(v, str):
            return json.loads(v, parse_float=Decimal)
        return v

    @classmethod
    def from_env(cls) -> "Config":
        """Создает конфиг из переменных окружения с валидацией"""
        telegram_token = os.getenv("TELEGRAM_BOT_TOKEN")
        db_url = os.getenv("DATABASE_URL")
        channel_id = os.getenv("CHANNEL_ID")
        strategy = os.getenv("CRYPTO_STRATEGY", "ledger").lower()

        if not telegram_token:
            raise ValueError("TELEGRAM_BOT_TOKEN не установлен")
        if not db_url:
            raise ValueError("DATABASE_URL не установлен")
        if not channel_id:
            raise ValueError("CHANNEL_ID не установлен")
        if strategy == "ledger" and not os.getenv("CRYPTO_WALLET_ADDRESS"):
            raise ValueError("CRYPTO_WALLET_ADDRESS не установлен (CRYPTO_STRATEGY=ledger)")
        if strategy == "invoice":
            if not os.getenv("NOWPAYMENTS_API_KEY"):
                raise ValueError("NOWPAYMENTS_API_KEY не установлен (CRYPTO_STRATEGY=invoice)")
            if not os.getenv("NOWPAYMENTS_IPN_SECRET"):
                raise ValueError("NOWPAYMENTS_IPN_SECRET не установлен (CRYPTO_STRATEGY=invoice)")

        values = {
            "telegram_bot_token": telegram_token,
            "database_url": db_url,
            "channel_id": channel_id,
            "crypto_strategy": strategy,
            "stars_refund_after_grant": os.getenv("STARS_REFUND_AFTER_GRANT", "False").lower() == "true",
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
        }

        # Необязательные параметры: если не заданы, остаются значения по умолчанию
        optional = {
            "channel_username": "CHANNEL_USERNAME",
            "admin_chat_ids": "ADMIN_CHAT_ID",
            "crypto_wallet_address": "CRYPTO_WALLET_ADDRESS",
            "trongrid_api_url": "TRONGRID_API_URL",
            "trongrid_api_key": "TRONGRID_API_KEY",
            "usdt_contract_address": "USDT_CONTRACT_ADDRESS",
            "nowpayments_api_key": "NOWPAYMENTS_API_KEY",
            "nowpayments_ipn_secret": "NOWPAYMENTS_IPN_SECRET",
            "nowpayments_api_url": "NOWPAYMENTS_API_URL",
            "base_url": "BASE_URL",
            "webhook_host": "WEBHOOK_HOST",
            "webhook_port": "WEBHOOK_PORT",
            "plan_prices": "PLAN_PRICES",
            "plan_durations": "PLAN_DURATIONS",
            "poll_interval_seconds": "POLL_INTERVAL_SECONDS",
            "sweep_delay_seconds": "SWEEP_DELAY_SECONDS",
            "provider_timeout_seconds": "PROVIDER_TIMEOUT_SECONDS",
        }
        for field_name, env_name in optional.items():
            value = os.getenv(env_name)
            if value:
                values[field_name] = value

        return cls(**values)


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Настраивает логирование для приложения"""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    return logging.getLogger(__name__)


# Глобальный экземпляр конфига
config = Config.from_env()
logger = setup_logging(config.log_level)
