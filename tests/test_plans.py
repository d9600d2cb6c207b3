from datetime import timedelta
from decimal import Decimal

import pytest

from subscription_bot.errors import UnknownPlanError, UnsupportedPaymentMethodError
from subscription_bot.models.payment import PaymentMethod, PlanType
from subscription_bot.services.plans import PlanCatalog


def test_default_catalog():
    catalog = PlanCatalog()

    assert catalog.plans() == [PlanType.DAY, PlanType.WEEK, PlanType.MONTH]
    assert catalog.price("WEEK", PaymentMethod.CRYPTO_TRX) == Decimal("60")
    assert catalog.price(PlanType.DAY, PaymentMethod.TELEGRAM_STARS) == Decimal("399")
    assert catalog.duration("week") == timedelta(days=7)
    assert catalog.currency(PaymentMethod.CRYPTO_USDT) == "USDT"
    assert catalog.title("MONTH") == "месяц"


def test_unknown_plan():
    with pytest.raises(UnknownPlanError):
        PlanCatalog().duration("YEAR")


def test_method_not_priced_for_plan():
    catalog = PlanCatalog(
        prices={"DAY": {"TELEGRAM_STARS": 100}},
        durations={"DAY": 86400},
    )

    assert catalog.supports("DAY", PaymentMethod.TELEGRAM_STARS)
    assert not catalog.supports("DAY", PaymentMethod.CRYPTO_TRX)
    with pytest.raises(UnsupportedPaymentMethodError):
        catalog.price("DAY", PaymentMethod.CRYPTO_TRX)
    assert catalog.plans() == [PlanType.DAY]


def test_price_without_duration_is_rejected():
    with pytest.raises(ValueError):
        PlanCatalog(prices={"WEEK": {"CRYPTO_TRX": 1}}, durations={"DAY": 86400})


def test_fractional_prices_keep_precision():
    catalog = PlanCatalog(prices={"DAY": {"CRYPTO_USDT": Decimal("9.99")}}, durations={"DAY": 86400})
    assert catalog.price("DAY", PaymentMethod.CRYPTO_USDT) == Decimal("9.99")
