from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiogram.exceptions import TelegramBadRequest, TelegramNetworkError

from subscription_bot.errors import (
    GatewayRejectedError,
    GatewayRetryableError,
    UnknownPlanError,
    UnsupportedPaymentMethodError,
)
from subscription_bot.models.payment import PaymentMethod
from subscription_bot.services.gateways.base import GatewayKind
from subscription_bot.services.gateways.hosted_invoice import HostedInvoiceGateway
from subscription_bot.services.gateways.ledger_scan import LedgerScanGateway
from subscription_bot.services.gateways.registry import build_gateways, gateway_for
from subscription_bot.services.gateways.stars import TelegramStarsGateway, generate_invoice_payload
from tests.fakes import WALLET, FakeTronGrid


@pytest.mark.asyncio
async def test_ledger_intent_points_to_wallet(ledger_gateway, make_user, store):
    before = datetime.now(timezone.utc)
    intent = await ledger_gateway.create_intent(await make_user(), "WEEK", PaymentMethod.CRYPTO_TRX)

    assert intent.pay_to == WALLET
    assert intent.pay_amount == Decimal("60")
    assert intent.pay_currency == "TRX"
    stored = store.payments[intent.payment["id"]]
    assert stored["status"] == "PENDING"
    assert stored["payment_type"] == "CRYPTO_TRX"
    assert stored["crypto_address"] == WALLET
    assert stored["expires_at"] >= before + timedelta(hours=1)


@pytest.mark.asyncio
async def test_hosted_intent_stores_provider_reference(hosted_gateway, nowpayments, make_user, store):
    intent = await hosted_gateway.create_intent(await make_user(), "MONTH", PaymentMethod.CRYPTO_USDT)

    request = nowpayments.created[0]
    assert request["pay_currency"] == "usdttrc20"
    assert request["order_id"] == intent.payment["id"]
    assert request["ipn_callback_url"] == "https://bot.example.com/webhooks/nowpayments"
    assert request["success_url"] == "https://bot.example.com/payment/success"
    stored = store.payments[intent.payment["id"]]
    assert stored["invoice_payload"] == intent.provider_reference
    assert stored["crypto_address"] == intent.pay_to
    assert stored["expected_amount"] == Decimal("50")
    assert intent.pay_currency == "USDTTRC20"


@pytest.mark.asyncio
async def test_provider_rate_limit_rolls_back_payment(hosted_gateway, nowpayments, make_user, store):
    nowpayments.create_payment = AsyncMock(side_effect=GatewayRetryableError("429", status_code=429))

    with pytest.raises(GatewayRetryableError) as exc:
        await hosted_gateway.create_intent(await make_user(), "DAY", PaymentMethod.CRYPTO_TRX)

    assert exc.value.retryable
    assert store.payments == {}


@pytest.mark.asyncio
async def test_stars_intent_sends_invoice(stars_gateway, bot, make_user, store):
    intent = await stars_gateway.create_intent(await make_user(42), "DAY", PaymentMethod.TELEGRAM_STARS)

    kwargs = bot.send_invoice.await_args.kwargs
    assert kwargs["chat_id"] == 42
    assert kwargs["currency"] == "XTR"
    assert kwargs["payload"] == intent.payment["invoice_payload"]
    assert kwargs["prices"][0].amount == 399
    assert intent.payment["invoice_payload"].startswith("payment_")
    assert store.payments[intent.payment["id"]]["currency"] == "XTR"


@pytest.mark.asyncio
@pytest.mark.parametrize("error, expected", [
    (TelegramBadRequest(method=MagicMock(), message="Bad Request: chat not found"), GatewayRejectedError),
    (TelegramNetworkError(method=MagicMock(), message="timeout"), GatewayRetryableError),
])
async def test_stars_invoice_failure_rolls_back(stars_gateway, bot, make_user, store, error, expected):
    bot.send_invoice.side_effect = error

    with pytest.raises(expected):
        await stars_gateway.create_intent(await make_user(), "DAY", PaymentMethod.TELEGRAM_STARS)

    assert store.payments == {}


@pytest.mark.asyncio
async def test_gateway_rejects_foreign_method(stars_gateway, make_user, store):
    with pytest.raises(UnsupportedPaymentMethodError):
        await stars_gateway.create_intent(await make_user(), "DAY", PaymentMethod.CRYPTO_TRX)
    assert store.payments == {}


@pytest.mark.asyncio
async def test_unknown_plan_creates_nothing(ledger_gateway, make_user, store):
    with pytest.raises(UnknownPlanError):
        await ledger_gateway.create_intent(await make_user(), "YEAR", PaymentMethod.CRYPTO_TRX)
    assert store.payments == {}


def test_invoice_payloads_are_unique():
    assert len({generate_invoice_payload() for _ in range(200)}) == 200


def test_build_gateways_ledger(pool, payments, catalog, bot):
    gateways = build_gateways(
        pool=pool, payments=payments, catalog=catalog, bot=bot,
        crypto_strategy="ledger", trongrid=FakeTronGrid(), wallet_address=WALLET,
    )

    assert isinstance(gateways[PaymentMethod.TELEGRAM_STARS], TelegramStarsGateway)
    assert isinstance(gateways[PaymentMethod.CRYPTO_TRX], LedgerScanGateway)
    assert gateways[PaymentMethod.CRYPTO_TRX] is gateways[PaymentMethod.CRYPTO_USDT]
    assert gateway_for(gateways, "CRYPTO_USDT").kind is GatewayKind.CRYPTO_LEDGER_SCAN


def test_build_gateways_invoice(pool, payments, catalog, bot, nowpayments):
    gateways = build_gateways(
        pool=pool, payments=payments, catalog=catalog, bot=bot,
        crypto_strategy="invoice", nowpayments=nowpayments, base_url="https://bot.example.com",
    )
    assert isinstance(gateways[PaymentMethod.CRYPTO_USDT], HostedInvoiceGateway)


@pytest.mark.parametrize("kwargs", [
    {"crypto_strategy": "invoice"},
    {"crypto_strategy": "ledger", "trongrid": FakeTronGrid()},
    {"crypto_strategy": "paypal"},
])
def test_build_gateways_misconfigured(pool, payments, catalog, bot, kwargs):
    with pytest.raises(ValueError):
        build_gateways(pool=pool, payments=payments, catalog=catalog, bot=bot, **kwargs)


def test_gateway_for_unknown_method(ledger_engine):
    with pytest.raises(UnsupportedPaymentMethodError):
        gateway_for(ledger_engine.gateways, "PAYPAL")
