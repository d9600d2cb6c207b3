from decimal import Decimal

import pytest

from subscription_bot.config import Config, setup_logging

REQUIRED = {
    "TELEGRAM_BOT_TOKEN": "123456:TEST",
    "DATABASE_URL": "postgresql://localhost/test",
    "CHANNEL_ID": "-100200300",
}
OPTIONAL = [
    "CRYPTO_STRATEGY", "CRYPTO_WALLET_ADDRESS", "NOWPAYMENTS_API_KEY", "NOWPAYMENTS_IPN_SECRET",
    "ADMIN_CHAT_ID", "PLAN_PRICES", "PLAN_DURATIONS", "STARS_REFUND_AFTER_GRANT", "WEBHOOK_PORT",
    "CHANNEL_USERNAME", "POLL_INTERVAL_SECONDS",
]


@pytest.fixture
def env(monkeypatch):
    for name in OPTIONAL:
        monkeypatch.delenv(name, raising=False)
    for name, value in REQUIRED.items():
        monkeypatch.setenv(name, value)
    monkeypatch.setenv("CRYPTO_WALLET_ADDRESS", "TWallet")
    return monkeypatch


def test_defaults(env):
    config = Config.from_env()

    assert config.crypto_strategy == "ledger"
    assert config.crypto_wallet_address == "TWallet"
    assert config.webhook_port == 8080
    assert config.stars_refund_after_grant is False
    assert config.admin_chat_ids == []
    assert config.plan_prices["WEEK"]["CRYPTO_TRX"] == 60


@pytest.mark.parametrize("missing", list(REQUIRED))
def test_required_variables(env, missing):
    env.delenv(missing)
    with pytest.raises(ValueError, match=missing):
        Config.from_env()


def test_ledger_requires_wallet(env):
    env.delenv("CRYPTO_WALLET_ADDRESS")
    with pytest.raises(ValueError, match="CRYPTO_WALLET_ADDRESS"):
        Config.from_env()


def test_invoice_requires_nowpayments_credentials(env):
    env.setenv("CRYPTO_STRATEGY", "INVOICE")
    with pytest.raises(ValueError, match="NOWPAYMENTS_API_KEY"):
        Config.from_env()

    env.setenv("NOWPAYMENTS_API_KEY", "key")
    with pytest.raises(ValueError, match="NOWPAYMENTS_IPN_SECRET"):
        Config.from_env()

    env.setenv("NOWPAYMENTS_IPN_SECRET", "secret")
    assert Config.from_env().crypto_strategy == "invoice"


def test_optional_values_are_parsed(env):
    env.setenv("ADMIN_CHAT_ID", "1, 2,3")
    env.setenv("PLAN_PRICES", '{"DAY": {"TELEGRAM_STARS": 100, "CRYPTO_TRX": 12.5}}')
    env.setenv("PLAN_DURATIONS", '{"DAY": 3600}')
    env.setenv("STARS_REFUND_AFTER_GRANT", "true")
    env.setenv("WEBHOOK_PORT", "9000")
    env.setenv("CHANNEL_USERNAME", "@private_channel")

    config = Config.from_env()

    assert config.admin_chat_ids == [1, 2, 3]
    assert config.plan_prices == {"DAY": {"TELEGRAM_STARS": Decimal("100"), "CRYPTO_TRX": Decimal("12.5")}}
    assert config.plan_durations == {"DAY": 3600}
    assert config.stars_refund_after_grant is True
    assert config.webhook_port == 9000
    assert config.channel_username == "@private_channel"


def test_invalid_poll_interval(env):
    env.setenv("POLL_INTERVAL_SECONDS", "-5")
    with pytest.raises(ValueError):
        Config.from_env()


def test_setup_logging():
    assert setup_logging("debug").name == "subscription_bot.config"
