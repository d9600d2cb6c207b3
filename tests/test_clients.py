from datetime import datetime, timezone
from decimal import Decimal

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from subscription_bot.clients.nowpayments import NowPaymentsClient
from subscription_bot.clients.trongrid import TronGridClient, parse_trc20_transfers, parse_trx_transfers
from subscription_bot.constants import USDT_TRC20_CONTRACT
from subscription_bot.errors import GatewayRejectedError, GatewayRetryableError
from subscription_bot.models.provider import ProviderStatus
from subscription_bot.utils.crypto import hmac_sha512_hex

USDT_HEX = "41a614f803b6fd780986a42c78ec9c7f77e6ded13c"
BLOCK_MS = 1754395200000  # 2025-08-05 12:00:00 UTC

NOWPAYMENTS_PAYMENT = {
    "payment_id": 5077125051,
    "payment_status": "waiting",
    "pay_address": "TXWalletPay",
    "price_amount": 60,
    "price_currency": "trx",
    "pay_amount": 60.0,
    "pay_currency": "trx",
    "order_id": "order-1",
    "created_at": "2025-08-05T12:00:00.000Z",
    "updated_at": "2025-08-05T12:00:00.000Z",
}


def _trx_tx(tx_id="tx-1", amount_sun=60_005_000, result="SUCCESS", kind="TransferContract"):
    return {
        "txID": tx_id,
        "ret": [{"contractRet": result}],
        "block_timestamp": BLOCK_MS,
        "raw_data": {"contract": [{
            "type": kind,
            "parameter": {"value": {"amount": amount_sun, "to_address": USDT_HEX}},
        }]},
    }


async def _server(routes):
    app = web.Application()
    for method, path, handler in routes:
        app.router.add_route(method, path, handler)
    server = TestServer(app)
    await server.start_server()
    return server


# --- NOWPayments ---

@pytest.mark.asyncio
async def test_create_payment_sends_api_key_and_parses_response():
    seen = {}

    async def create(request):
        seen["key"] = request.headers.get("x-api-key")
        seen["body"] = await request.json()
        return web.json_response(NOWPAYMENTS_PAYMENT, status=201)

    server = await _server([("POST", "/v1/payment", create)])
    client = NowPaymentsClient("key-1", "secret", base_url=str(server.make_url("/v1")))
    try:
        payment = await client.create_payment(
            price_amount=Decimal("60"), price_currency="trx", pay_currency="trx", order_id="order-1",
            order_description="Подписка", ipn_callback_url="https://x/webhooks/nowpayments",
            success_url="https://x/payment/success", cancel_url="https://x/payment/cancel",
        )
    finally:
        await client.close()
        await server.close()

    assert seen["key"] == "key-1"
    assert seen["body"]["order_id"] == "order-1"
    assert seen["body"]["ipn_callback_url"] == "https://x/webhooks/nowpayments"
    assert payment.payment_id == "5077125051"
    assert payment.pay_amount == Decimal("60.0")
    assert payment.status is ProviderStatus.WAITING
    assert payment.created_at == datetime(2025, 8, 5, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
@pytest.mark.parametrize("status, error", [
    (429, GatewayRetryableError),
    (502, GatewayRetryableError),
    (400, GatewayRejectedError),
])
async def test_nowpayments_error_mapping(status, error):
    async def handler(request):
        return web.json_response({"message": "pay_currency is invalid"}, status=status)

    server = await _server([("GET", "/v1/payment/1", handler)])
    client = NowPaymentsClient("key", "secret", base_url=str(server.make_url("/v1")))
    try:
        with pytest.raises(error) as exc:
            await client.get_payment_status("1")
    finally:
        await client.close()
        await server.close()

    assert exc.value.status_code == status
    if error is GatewayRejectedError:
        assert "pay_currency is invalid" in str(exc.value)
        assert not exc.value.retryable


@pytest.mark.asyncio
async def test_unexpected_response_shape_is_retryable():
    async def handler(request):
        return web.json_response({"unexpected": True})

    server = await _server([("GET", "/v1/payment/1", handler)])
    client = NowPaymentsClient("key", "secret", base_url=str(server.make_url("/v1")))
    try:
        with pytest.raises(GatewayRetryableError):
            await client.get_payment_status("1")
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_json_array_response_is_retryable():
    async def handler(request):
        return web.json_response([NOWPAYMENTS_PAYMENT])

    server = await _server([("GET", "/v1/payment/1", handler), ("GET", "/v1/status", handler)])
    client = NowPaymentsClient("key", "secret", base_url=str(server.make_url("/v1")))
    try:
        with pytest.raises(GatewayRetryableError):
            await client.get_payment_status("1")
        assert not await client.check_api_status()
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_check_api_status():
    async def ok(request):
        return web.json_response({"message": "OK"})

    server = await _server([("GET", "/v1/status", ok)])
    client = NowPaymentsClient("key", "secret", base_url=str(server.make_url("/v1")))
    try:
        assert await client.check_api_status()
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_unreachable_provider_is_retryable():
    client = NowPaymentsClient("key", "secret", base_url="http://127.0.0.1:1/v1", timeout=1)
    try:
        with pytest.raises(GatewayRetryableError):
            await client.get_payment_status("1")
        assert not await client.check_api_status()
    finally:
        await client.close()


def test_nowpayments_signature():
    client = NowPaymentsClient("key", "secret")
    body = b'{"payment_id":1,"payment_status":"finished"}'

    assert client.verify_signature(body, hmac_sha512_hex("secret", body))
    assert client.verify_signature(body, hmac_sha512_hex("secret", body).upper())
    assert not client.verify_signature(body, hmac_sha512_hex("other", body))
    assert not client.verify_signature(body, None)
    assert not NowPaymentsClient("key", "").verify_signature(body, hmac_sha512_hex("", body))


# --- TronGrid ---

def test_parse_trx_transfers_skips_failed_and_foreign_contracts():
    data = [
        _trx_tx("ok"),
        _trx_tx("reverted", result="REVERT"),
        _trx_tx("vote", kind="VoteWitnessContract"),
        {"txID": "broken"},
    ]

    transfers = parse_trx_transfers(data)

    assert [t.tx_id for t in transfers] == ["ok"]
    assert transfers[0].amount == Decimal("60.005")
    assert transfers[0].to_address == USDT_TRC20_CONTRACT
    assert transfers[0].timestamp == datetime(2025, 8, 5, 12, 0, tzinfo=timezone.utc)


def test_parse_trc20_transfers_filters_contract():
    data = [
        {
            "transaction_id": "usdt-1", "to": "TReceiver", "value": "19000000", "type": "Transfer",
            "block_timestamp": BLOCK_MS,
            "token_info": {"address": USDT_TRC20_CONTRACT, "decimals": 6, "symbol": "USDT"},
        },
        {
            "transaction_id": "other", "to": "TReceiver", "value": "1", "type": "Transfer",
            "block_timestamp": BLOCK_MS, "token_info": {"address": "TOtherToken", "decimals": 6},
        },
    ]

    transfers = parse_trc20_transfers(data, USDT_TRC20_CONTRACT)

    assert len(transfers) == 1
    assert transfers[0].amount == Decimal("19")
    assert transfers[0].asset == "USDT"


@pytest.mark.asyncio
async def test_trongrid_client_queries_incoming_transfers():
    seen = {}

    async def handler(request):
        seen["query"] = dict(request.query)
        seen["key"] = request.headers.get("TRON-PRO-API-KEY")
        return web.json_response({"success": True, "data": [_trx_tx()]})

    server = await _server([("GET", "/v1/accounts/TWallet/transactions", handler)])
    client = TronGridClient(str(server.make_url("")), api_key="tron-key")
    since = datetime(2025, 8, 5, 11, 0, tzinfo=timezone.utc)
    try:
        transfers = await client.list_trx_transfers("TWallet", since)
    finally:
        await client.close()
        await server.close()

    assert seen["key"] == "tron-key"
    assert seen["query"]["only_to"] == "true"
    assert seen["query"]["min_timestamp"] == str(int(since.timestamp() * 1000))
    assert [t.tx_id for t in transfers] == ["tx-1"]


@pytest.mark.asyncio
async def test_trongrid_rate_limit_is_retryable():
    async def handler(request):
        return web.json_response({"Error": "rate limit"}, status=429)

    server = await _server([("GET", "/v1/accounts/TWallet/transactions/trc20", handler)])
    client = TronGridClient(str(server.make_url("")))
    try:
        with pytest.raises(GatewayRetryableError):
            await client.list_trc20_transfers("TWallet", USDT_TRC20_CONTRACT, datetime.now(timezone.utc))
    finally:
        await client.close()
        await server.close()


@pytest.mark.parametrize("body", [
    [_trx_tx()],
    {"success": True, "data": {"txID": "tx-1"}},
])
@pytest.mark.asyncio
async def test_trongrid_unexpected_body_is_retryable(body):
    async def handler(request):
        return web.json_response(body)

    server = await _server([("GET", "/v1/accounts/TWallet/transactions", handler)])
    client = TronGridClient(str(server.make_url("")))
    try:
        with pytest.raises(GatewayRetryableError):
            await client.list_trx_transfers("TWallet", datetime.now(timezone.utc))
    finally:
        await client.close()
        await server.close()
