"""Клиент NOWPayments (hosted invoice PSP)"""
import asyncio
import logging
from decimal import Decimal
from typing import Any, Optional

import aiohttp
from pydantic import ValidationError

from subscription_bot.errors import GatewayRejectedError, GatewayRetryableError
from subscription_bot.models.provider import NowPaymentsPayment
from subscription_bot.utils.crypto import verify_hmac_signature

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-nowpayments-sig"


class NowPaymentsClient:
    """Создание счетов, запрос статуса и проверка подписи IPN"""

    def __init__(
        self,
        api_key: str,
        ipn_secret: str,
        base_url: str = "https://api.nowpayments.io/v1",
        timeout: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.ipn_secret = ipn_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        session = self._get_session()
        headers = {"x-api-key": self.api_key, "Content-Type": "application/json"}
        try:
            async with session.request(
                method, f"{self.base_url}{path}", json=payload, headers=headers, timeout=self.timeout
            ) as resp:
                if resp.status == 429:
                    raise GatewayRetryableError(
                        "NOWPayments: превышен лимит запросов, повторите позже", status_code=429
                    )
                if resp.status >= 500:
                    raise GatewayRetryableError(f"NOWPayments недоступен (HTTP {resp.status})", status_code=resp.status)

                data = await resp.json(content_type=None)
                if resp.status >= 400:
                    message = data.get("message") if isinstance(data, dict) else None
                    raise GatewayRejectedError(
                        f"NOWPayments API Error: {message or resp.reason}", status_code=resp.status
                    )
                if not isinstance(data, dict):
                    raise GatewayRetryableError(
                        f"NOWPayments: ожидался JSON объект, получено {type(data).__name__}", status_code=resp.status
                    )
                return data
        except asyncio.TimeoutError as e:
            raise GatewayRetryableError("NOWPayments: таймаут запроса") from e
        except aiohttp.ClientError as e:
            raise GatewayRetryableError(f"NOWPayments: сетевая ошибка: {e}") from e
        except ValueError as e:
            raise GatewayRetryableError(f"NOWPayments: некорректный JSON в ответе: {e}") from e

    @staticmethod
    def _parse(data: dict[str, Any]) -> NowPaymentsPayment:
        try:
            return NowPaymentsPayment.model_validate(data)
        except ValidationError as e:
            raise GatewayRetryableError(f"NOWPayments: неожиданный формат ответа: {e}") from e

    async def create_payment(
        self,
        *,
        price_amount: Decimal,
        price_currency: str,
        pay_currency: str,
        order_id: str,
        order_description: str,
        ipn_callback_url: str,
        success_url: str,
        cancel_url: str,
    ) -> NowPaymentsPayment:
        """Создание крипто-платежа"""
        logger.info(
            f"🔄 Создаем платеж NOWPayments: order_id={order_id}, "
            f"{price_amount} {price_currency} -> {pay_currency}"
        )
        data = await self._request("POST", "/payment", {
            "price_amount": float(price_amount),
            "price_currency": price_currency,
            "pay_currency": pay_currency,
            "order_id": order_id,
            "order_description": order_description,
            "ipn_callback_url": ipn_callback_url,
            "success_url": success_url,
            "cancel_url": cancel_url,
        })
        payment = self._parse(data)
        logger.info(
            f"✅ Платеж NOWPayments создан: payment_id={payment.payment_id}, "
            f"status={payment.payment_status}, amount={payment.pay_amount} {payment.pay_currency}"
        )
        return payment

    async def get_payment_status(self, payment_id: str) -> NowPaymentsPayment:
        """Получение статуса платежа"""
        data = await self._request("GET", f"/payment/{payment_id}")
        return self._parse(data)

    async def check_api_status(self) -> bool:
        """Проверка доступности API"""
        try:
            data = await self._request("GET", "/status")
        except (GatewayRetryableError, GatewayRejectedError) as e:
            logger.error(f"NOWPayments API недоступен: {e}")
            return False
        return data.get("message") == "OK"

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Подпись IPN: HMAC-SHA512 от сырого тела запроса"""
        return verify_hmac_signature(self.ipn_secret, raw_body, signature)
