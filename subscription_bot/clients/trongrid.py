"""Клиент TronGrid: входящие переводы TRX и TRC20 на кошелек"""
import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import aiohttp

from subscription_bot.constants import SUN_PER_TRX
from subscription_bot.errors import GatewayRejectedError, GatewayRetryableError
from subscription_bot.models.provider import LedgerTransfer
from subscription_bot.utils.tron import normalize_address

logger = logging.getLogger(__name__)


def _from_millis(value: int) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def parse_trx_transfers(data: list[dict[str, Any]]) -> list[LedgerTransfer]:
    """Успешные TransferContract транзакции; остальные записи пропускаются"""
    transfers = []
    for tx in data:
        try:
            if tx.get("ret") and tx["ret"][0].get("contractRet") != "SUCCESS":
                continue
            contract = tx["raw_data"]["contract"][0]
            if contract.get("type") != "TransferContract":
                continue
            value = contract["parameter"]["value"]
            transfers.append(LedgerTransfer(
                tx_id=tx["txID"],
                to_address=normalize_address(value["to_address"]),
                amount=Decimal(int(value["amount"])) / SUN_PER_TRX,
                asset="TRX",
                timestamp=_from_millis(tx["block_timestamp"]),
            ))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.debug(f"Пропускаем нераспознанную TRX транзакцию: {e}")
    return transfers


def parse_trc20_transfers(data: list[dict[str, Any]], contract_address: str) -> list[LedgerTransfer]:
    """TRC20 Transfer события нужного контракта"""
    transfers = []
    for tx in data:
        try:
            token = tx.get("token_info") or {}
            if token.get("address") != contract_address or tx.get("type", "Transfer") != "Transfer":
                continue
            decimals = int(token.get("decimals", 6))
            transfers.append(LedgerTransfer(
                tx_id=tx["transaction_id"],
                to_address=normalize_address(tx["to"]),
                amount=Decimal(int(tx["value"])) / (Decimal(10) ** decimals),
                asset=token.get("symbol", "USDT"),
                timestamp=_from_millis(tx["block_timestamp"]),
            ))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.debug(f"Пропускаем нераспознанную TRC20 транзакцию: {e}")
    return transfers


class TronGridClient:
    """Чтение истории кошелька через TronGrid v1 API"""

    def __init__(
        self,
        base_url: str = "https://api.trongrid.io",
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
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

    async def _get(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        headers = {"TRON-PRO-API-KEY": self.api_key} if self.api_key else {}
        try:
            async with self._get_session().get(
                f"{self.base_url}{path}", params=params, headers=headers, timeout=self.timeout
            ) as resp:
                if resp.status == 429:
                    raise GatewayRetryableError("TronGrid: превышен лимит запросов", status_code=429)
                if resp.status >= 500:
                    raise GatewayRetryableError(f"TronGrid недоступен (HTTP {resp.status})", status_code=resp.status)
                body = await resp.json(content_type=None)
                if not isinstance(body, dict):
                    raise GatewayRetryableError(
                        f"TronGrid: ожидался JSON объект, получено {type(body).__name__}", status_code=resp.status
                    )
                if resp.status >= 400 or not body.get("success", True):
                    raise GatewayRejectedError(
                        f"TronGrid API Error: {body.get('error') or resp.reason}", status_code=resp.status
                    )
                data = body.get("data", [])
                if not isinstance(data, list):
                    raise GatewayRetryableError("TronGrid: поле data не является списком", status_code=resp.status)
                return data
        except asyncio.TimeoutError as e:
            raise GatewayRetryableError("TronGrid: таймаут запроса") from e
        except aiohttp.ClientError as e:
            raise GatewayRetryableError(f"TronGrid: сетевая ошибка: {e}") from e
        except ValueError as e:
            raise GatewayRetryableError(f"TronGrid: некорректный JSON в ответе: {e}") from e

    async def list_trx_transfers(self, address: str, since: datetime, limit: int = 50) -> list[LedgerTransfer]:
        """Входящие подтвержденные переводы TRX начиная с момента since"""
        data = await self._get(f"/v1/accounts/{address}/transactions", {
            "only_to": "true",
            "only_confirmed": "true",
            "min_timestamp": _to_millis(since),
            "limit": limit,
        })
        return parse_trx_transfers(data)

    async def list_trc20_transfers(
        self,
        address: str,
        contract_address: str,
        since: datetime,
        limit: int = 50,
    ) -> list[LedgerTransfer]:
        """Входящие подтвержденные переводы TRC20 токена начиная с момента since"""
        data = await self._get(f"/v1/accounts/{address}/transactions/trc20", {
            "only_to": "true",
            "only_confirmed": "true",
            "contract_address": contract_address,
            "min_timestamp": _to_millis(since),
            "limit": limit,
        })
        return parse_trc20_transfers(data, contract_address)
