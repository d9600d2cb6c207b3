import json
import logging
from datetime import datetime, timezone
from typing import Optional

import asyncpg
from pydantic import ValidationError

from subscription_bot.clients.nowpayments import NowPaymentsClient
from subscription_bot.constants import CRYPTO_INVOICE_TTL, PROVIDER_STATUS_LABELS
from subscription_bot.db.repositories.payments import PaymentRepository
from subscription_bot.errors import InvalidSignatureError, MalformedPayloadError
from subscription_bot.models.payment import (
    CRYPTO_METHODS,
    PaymentIntent,
    PaymentMethod,
    PaymentRecord,
    PlanType,
)
from subscription_bot.models.provider import (
    Confirmation,
    NowPaymentsPayment,
    ProviderStatus,
    StatusResult,
)
from subscription_bot.models.user import UserRecord
from subscription_bot.services.gateways.base import GatewayKind, PaymentGateway
from subscription_bot.services.plans import PlanCatalog

logger = logging.getLogger(__name__)

# Коды валют NOWPayments
PAY_CURRENCIES = {
    PaymentMethod.CRYPTO_TRX: "trx",
    PaymentMethod.CRYPTO_USDT: "usdttrc20",
}


def status_label(status: ProviderStatus) -> str:
    return PROVIDER_STATUS_LABELS.get(status.value, "Неизвестно")


def to_status_result(payment: NowPaymentsPayment) -> StatusResult:
    """Статус счёта NOWPayments -> кандидат на подтверждение"""
    status = payment.status
    confirmations = []
    if status.is_success and payment.pay_amount is not None:
        confirmations.append(Confirmation(
            reference=payment.payment_id,
            destination=payment.pay_address,
            amount=payment.pay_amount,
            occurred_at=payment.updated_at or payment.created_at or datetime.now(timezone.utc),
        ))
    return StatusResult(status=status, label=status_label(status), confirmations=confirmations)


class HostedInvoiceGateway(PaymentGateway):
    """
    Крипто-платеж через NOWPayments.

    ID платежа NOWPayments сохраняется в invoice_payload, а при завершении
    записывается в crypto_tx_hash: webhook и опрос сходятся на одном
    уникальном значении.
    """

    kind = GatewayKind.CRYPTO_HOSTED_INVOICE
    methods = CRYPTO_METHODS
    ttl = CRYPTO_INVOICE_TTL

    def __init__(
        self,
        pool: asyncpg.Pool,
        payments: PaymentRepository,
        catalog: PlanCatalog,
        client: NowPaymentsClient,
        base_url: str,
    ):
        super().__init__(pool, payments, catalog)
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def _open_intent(
        self,
        conn: asyncpg.Connection,
        payment: PaymentRecord,
        user: UserRecord,
        plan: PlanType,
        method: PaymentMethod,
    ) -> PaymentIntent:
        asset = PAY_CURRENCIES[method]
        invoice = await self.client.create_payment(
            price_amount=payment["amount"],
            price_currency=asset,
            pay_currency=asset,
            order_id=payment["id"],
            order_description=f"Подписка на {self.catalog.title(plan)}",
            ipn_callback_url=f"{self.base_url}/webhooks/nowpayments",
            success_url=f"{self.base_url}/payment/success",
            cancel_url=f"{self.base_url}/payment/cancel",
        )
        pay_amount = invoice.pay_amount if invoice.pay_amount is not None else payment["amount"]

        payment = await self.payments.attach_provider_reference(
            payment["id"],
            invoice_payload=invoice.payment_id,
            crypto_address=invoice.pay_address,
            expected_amount=pay_amount,
            conn=conn,
        )
        return PaymentIntent(
            payment=payment,
            provider_reference=invoice.payment_id,
            pay_to=invoice.pay_address,
            pay_amount=pay_amount,
            pay_currency=(invoice.pay_currency or asset).upper(),
            invoice_url=invoice.invoice_url,
        )

    async def get_status(self, payment: PaymentRecord) -> StatusResult:
        reference = payment.get("invoice_payload")
        if not reference:
            return StatusResult(status=ProviderStatus.UNKNOWN, label=status_label(ProviderStatus.UNKNOWN))
        invoice = await self.client.get_payment_status(reference)
        return to_status_result(invoice)

    def parse_webhook(self, signature: Optional[str], raw_body: bytes) -> NowPaymentsPayment:
        """
        Проверка подписи и разбор тела IPN

        Raises:
            InvalidSignatureError: подпись отсутствует или не совпала
            MalformedPayloadError: тело не является платежом NOWPayments
        """
        if not self.client.verify_signature(raw_body, signature):
            raise InvalidSignatureError("Неверная подпись NOWPayments")
        try:
            return NowPaymentsPayment.model_validate(json.loads(raw_body))
        except (ValueError, ValidationError) as e:
            raise MalformedPayloadError(f"Некорректное тело webhook: {e}") from e
