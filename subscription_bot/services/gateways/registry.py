"""Сборка шлюзов один раз при старте: способ оплаты -> шлюз"""
import logging
from typing import Optional, Union

import asyncpg
from aiogram import Bot

from subscription_bot.clients.nowpayments import NowPaymentsClient
from subscription_bot.clients.trongrid import TronGridClient
from subscription_bot.db.repositories.payments import PaymentRepository
from subscription_bot.errors import UnsupportedPaymentMethodError
from subscription_bot.models.payment import CRYPTO_METHODS, PaymentMethod
from subscription_bot.services.gateways.hosted_invoice import HostedInvoiceGateway
from subscription_bot.services.gateways.ledger_scan import LedgerScanGateway
from subscription_bot.services.gateways.stars import TelegramStarsGateway
from subscription_bot.services.plans import PlanCatalog

logger = logging.getLogger(__name__)

PaymentGatewayType = Union[TelegramStarsGateway, HostedInvoiceGateway, LedgerScanGateway]
GatewayMap = dict[PaymentMethod, PaymentGatewayType]


def build_gateways(
    *,
    pool: asyncpg.Pool,
    payments: PaymentRepository,
    catalog: PlanCatalog,
    bot: Bot,
    crypto_strategy: str,
    nowpayments: Optional[NowPaymentsClient] = None,
    trongrid: Optional[TronGridClient] = None,
    wallet_address: Optional[str] = None,
    usdt_contract: Optional[str] = None,
    base_url: str = "",
) -> GatewayMap:
    """
    Stars обслуживается всегда, крипто-способы одной из двух стратегий:
    ledger (TronGrid) или invoice (NOWPayments).
    """
    gateways: GatewayMap = {
        PaymentMethod.TELEGRAM_STARS: TelegramStarsGateway(pool, payments, catalog, bot),
    }

    crypto: PaymentGatewayType
    if crypto_strategy == "invoice":
        if nowpayments is None:
            raise ValueError("Для CRYPTO_STRATEGY=invoice нужен клиент NOWPayments")
        crypto = HostedInvoiceGateway(pool, payments, catalog, nowpayments, base_url)
    elif crypto_strategy == "ledger":
        if trongrid is None or not wallet_address:
            raise ValueError("Для CRYPTO_STRATEGY=ledger нужен клиент TronGrid и адрес кошелька")
        kwargs = {"usdt_contract": usdt_contract} if usdt_contract else {}
        crypto = LedgerScanGateway(pool, payments, catalog, trongrid, wallet_address, **kwargs)
    else:
        raise ValueError(f"Неизвестная стратегия крипто-оплаты: {crypto_strategy}")

    for method in CRYPTO_METHODS:
        gateways[method] = crypto

    logger.info(f"🔌 Платежные шлюзы: Stars + {crypto.kind.value}")
    return gateways


def gateway_for(gateways: GatewayMap, method: Union[str, PaymentMethod]) -> PaymentGatewayType:
    try:
        return gateways[PaymentMethod(method)]
    except (KeyError, ValueError):
        raise UnsupportedPaymentMethodError(str(getattr(method, "value", method))) from None
