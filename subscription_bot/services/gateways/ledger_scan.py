import logging
from decimal import Decimal
from typing import Any

import asyncpg

from subscription_bot.clients.trongrid import TronGridClient
from subscription_bot.constants import AMOUNT_TOLERANCE, CRYPTO_INVOICE_TTL, USDT_TRC20_CONTRACT
from subscription_bot.db.repositories.payments import PaymentRepository
from subscription_bot.models.payment import (
    CRYPTO_METHODS,
    PaymentIntent,
    PaymentMethod,
    PaymentRecord,
    PlanType,
)
from subscription_bot.models.provider import Confirmation, ProviderStatus, StatusResult
from subscription_bot.models.user import UserRecord
from subscription_bot.services.gateways.base import GatewayKind, PaymentGateway
from subscription_bot.services.matching import matches_payment
from subscription_bot.services.plans import PlanCatalog

logger = logging.getLogger(__name__)


class LedgerScanGateway(PaymentGateway):
    """Прямой перевод на кошелек, подтверждение ищется в истории TronGrid"""

    kind = GatewayKind.CRYPTO_LEDGER_SCAN
    methods = CRYPTO_METHODS
    ttl = CRYPTO_INVOICE_TTL

    def __init__(
        self,
        pool: asyncpg.Pool,
        payments: PaymentRepository,
        catalog: PlanCatalog,
        client: TronGridClient,
        wallet_address: str,
        usdt_contract: str = USDT_TRC20_CONTRACT,
        tolerance: Decimal = AMOUNT_TOLERANCE,
    ):
        super().__init__(pool, payments, catalog)
        self.client = client
        self.wallet_address = wallet_address
        self.usdt_contract = usdt_contract
        self.tolerance = tolerance

    def _payment_fields(self, method: PaymentMethod, price: Decimal) -> dict[str, Any]:
        return {"crypto_address": self.wallet_address, "expected_amount": price}

    async def _open_intent(
        self,
        conn: asyncpg.Connection,
        payment: PaymentRecord,
        user: UserRecord,
        plan: PlanType,
        method: PaymentMethod,
    ) -> PaymentIntent:
        return PaymentIntent(
            payment=payment,
            provider_reference=payment["id"],
            pay_to=self.wallet_address,
            pay_amount=payment["expected_amount"],
            pay_currency=payment["currency"],
        )

    async def get_status(self, payment: PaymentRecord) -> StatusResult:
        method = PaymentMethod(payment["payment_type"])
        address = payment["crypto_address"] or self.wallet_address
        if method is PaymentMethod.CRYPTO_USDT:
            transfers = await self.client.list_trc20_transfers(address, self.usdt_contract, payment["created_at"])
        else:
            transfers = await self.client.list_trx_transfers(address, payment["created_at"])

        confirmations = [
            Confirmation(reference=t.tx_id, destination=t.to_address, amount=t.amount, occurred_at=t.timestamp)
            for t in transfers
        ]
        if any(matches_payment(payment, c, self.tolerance) for c in confirmations):
            return StatusResult(status=ProviderStatus.FINISHED, label="Перевод найден", confirmations=confirmations)
        return StatusResult(status=ProviderStatus.WAITING, label="Ожидает перевода", confirmations=confirmations)
