"""Сверка платежей: webhook провайдера, фоновый опрос, ручная проверка, Stars"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol

from subscription_bot.constants import (
    AMOUNT_TOLERANCE,
    PROVIDER_TIMEOUT_SECONDS,
    SWEEP_DELAY_SECONDS,
)
from subscription_bot.db.repositories.payments import PaymentRepository
from subscription_bot.db.repositories.users import UserRepository
from subscription_bot.errors import GatewayError, LatePaymentError, MalformedPayloadError
from subscription_bot.models.payment import PaymentMethod, PaymentRecord, PaymentStatus
from subscription_bot.models.provider import ProviderStatus, StatusResult
from subscription_bot.models.subscription import CompletionResult
from subscription_bot.services.completion import PaymentCompleter
from subscription_bot.services.gateways.base import GatewayKind
from subscription_bot.services.gateways.hosted_invoice import HostedInvoiceGateway, to_status_result
from subscription_bot.services.gateways.registry import GatewayMap, gateway_for
from subscription_bot.services.gateways.stars import TelegramStarsGateway
from subscription_bot.services.matching import matches_payment
from subscription_bot.utils.reference_cache import RecentReferences

logger = logging.getLogger(__name__)

# Счёт закрыт без оплаты, а списание Stars пришло позже
LATE_STATUSES = frozenset({PaymentStatus.EXPIRED.value, PaymentStatus.FAILED.value})


class Outcome(str, Enum):
    """Итог обработки одного подтверждения или статуса"""
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    PENDING = "pending"
    IGNORED = "ignored"


@dataclass
class SweepReport:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    errors: int = 0
    timeouts: int = 0


@dataclass(frozen=True)
class CheckResult:
    """Результат ручной проверки платежа (/check или кнопка под счётом)"""
    payment: PaymentRecord
    status: Optional[StatusResult]
    outcome: Outcome


class FailureNotifier(Protocol):
    async def payment_failed(self, telegram_id: int, label: str) -> bool: ...


class ReconciliationEngine:
    """
    Сводит подтверждения провайдеров с PENDING платежами.

    Все пути (webhook, опрос, /check, successful_payment) заканчиваются
    в PaymentCompleter, поэтому повторная доставка одного подтверждения
    не выдает подписку дважды.
    """

    def __init__(
        self,
        payments: PaymentRepository,
        users: UserRepository,
        completer: PaymentCompleter,
        gateways: GatewayMap,
        *,
        cache: Optional[RecentReferences] = None,
        notifier: Optional[FailureNotifier] = None,
        tolerance: Decimal = AMOUNT_TOLERANCE,
        sweep_delay: float = SWEEP_DELAY_SECONDS,
        provider_timeout: float = PROVIDER_TIMEOUT_SECONDS,
        stars_refund_after_grant: bool = False,
    ):
        self.payments = payments
        self.users = users
        self.completer = completer
        self.gateways = gateways
        self.cache = cache if cache is not None else RecentReferences()
        self.notifier = notifier
        self.tolerance = tolerance
        self.sweep_delay = sweep_delay
        self.provider_timeout = provider_timeout
        self.stars_refund_after_grant = stars_refund_after_grant

    @property
    def polled_methods(self) -> list[PaymentMethod]:
        """Способы, статус которых нужно запрашивать у провайдера"""
        return [m for m, g in self.gateways.items() if g.kind is not GatewayKind.IN_APP_CURRENCY]

    def _hosted_gateway(self) -> Optional[HostedInvoiceGateway]:
        for gateway in self.gateways.values():
            if isinstance(gateway, HostedInvoiceGateway):
                return gateway
        return None

    # --- webhook ---

    async def handle_webhook(self, signature: Optional[str], raw_body: bytes) -> Outcome:
        """
        IPN от NOWPayments.

        Raises:
            InvalidSignatureError: подпись не прошла проверку
            MalformedPayloadError: тело не разобрано или webhook не настроен
        """
        gateway = self._hosted_gateway()
        if gateway is None:
            raise MalformedPayloadError("Webhook NOWPayments не настроен (CRYPTO_STRATEGY != invoice)")

        event = gateway.parse_webhook(signature, raw_body)
        logger.info(f"📨 Webhook NOWPayments: payment_id={event.payment_id}, status={event.payment_status}")

        if event.payment_id in self.cache:
            return Outcome.DUPLICATE

        payment = await self.payments.get_by_invoice_payload(event.payment_id)
        if payment is None and event.order_id:
            # Счёт мог не сохраниться после создания: ищем по нашему order_id
            payment = await self.payments.get(event.order_id)
            if payment is not None and payment["payment_type"] == PaymentMethod.TELEGRAM_STARS.value:
                payment = None
        if payment is None:
            logger.warning(f"Webhook для неизвестного платежа NOWPayments {event.payment_id}")
            return Outcome.IGNORED
        if event.order_id and event.order_id != payment["id"]:
            logger.warning(
                f"Webhook NOWPayments {event.payment_id}: order_id={event.order_id} "
                f"не совпадает с платежом {payment['id']}"
            )
            return Outcome.IGNORED
        if payment["status"] != PaymentStatus.PENDING.value:
            return Outcome.DUPLICATE

        return await self._apply(payment, to_status_result(event))

    # --- фоновый опрос ---

    async def poll_pending(self, now: Optional[datetime] = None) -> SweepReport:
        """Один проход по PENDING крипто-платежам; ошибки одного платежа не мешают остальным"""
        now = now or datetime.now(timezone.utc)
        report = SweepReport()
        methods = self.polled_methods
        if not methods:
            return report

        pending = await self.payments.list_pending(methods, now)
        for index, payment in enumerate(pending):
            if index:
                await asyncio.sleep(self.sweep_delay)
            report.checked += 1
            try:
                outcome = await self.reconcile_payment(payment)
            except asyncio.TimeoutError:
                report.timeouts += 1
                logger.warning(f"⏱️ Таймаут запроса статуса платежа {payment['id']}")
                continue
            except GatewayError as e:
                report.errors += 1
                if e.retryable:
                    logger.warning(f"Временная ошибка провайдера для платежа {payment['id']}: {e}")
                else:
                    logger.error(f"Провайдер отклонил запрос статуса платежа {payment['id']}: {e}")
                continue
            except Exception as e:
                report.errors += 1
                logger.error(f"Ошибка проверки платежа {payment['id']}: {e}")
                continue

            if outcome is Outcome.COMPLETED:
                report.completed += 1
            elif outcome is Outcome.FAILED:
                report.failed += 1

        if report.checked:
            logger.info(
                f"🔍 Проверено платежей: {report.checked}, завершено: {report.completed}, "
                f"неудачных: {report.failed}, ошибок: {report.errors}, таймаутов: {report.timeouts}"
            )
        return report

    async def _fetch_status(self, payment: PaymentRecord) -> StatusResult:
        gateway = gateway_for(self.gateways, payment["payment_type"])
        return await asyncio.wait_for(gateway.get_status(payment), timeout=self.provider_timeout)

    async def reconcile_payment(self, payment: PaymentRecord) -> Outcome:
        """Запросить статус у провайдера и применить его"""
        status = await self._fetch_status(payment)
        return await self._apply(payment, status)

    async def check_payment(self, user_id: str, payment_id: Optional[str] = None) -> Optional[CheckResult]:
        """
        Ручная проверка крипто-платежа пользователя.

        Без payment_id берется последний PENDING платеж (/check),
        с payment_id - платеж из кнопки под счётом. Уже закрытый платеж
        возвращается без запроса к провайдеру (status=None, outcome=DUPLICATE).
        Ошибки провайдера пробрасываются вызывающему.
        """
        if payment_id is None:
            payment = await self.payments.latest_pending_for_user(user_id, self.polled_methods)
        else:
            payment = await self.payments.get(payment_id)
            polled = {method.value for method in self.polled_methods}
            if payment is not None and (payment["user_id"] != user_id or payment["payment_type"] not in polled):
                payment = None
        if payment is None:
            return None
        if payment["status"] != PaymentStatus.PENDING.value:
            return CheckResult(payment=payment, status=None, outcome=Outcome.DUPLICATE)
        status = await self._fetch_status(payment)
        outcome = await self._apply(payment, status)
        return CheckResult(payment=payment, status=status, outcome=outcome)

    # --- применение статуса ---

    async def _apply(self, payment: PaymentRecord, status: StatusResult) -> Outcome:
        if status.status.is_success:
            return await self._apply_confirmations(payment, status)

        if status.status.is_failure:
            if await self.payments.mark_failed(payment["id"]):
                logger.info(f"❌ Платеж {payment['id']} отмечен как FAILED ({status.status.value})")
                await self._notify_failed(payment, status.label)
                return Outcome.FAILED
            return Outcome.DUPLICATE

        if status.status is ProviderStatus.UNKNOWN:
            logger.warning(f"Неизвестный статус провайдера для платежа {payment['id']}")
        return Outcome.PENDING

    async def _apply_confirmations(self, payment: PaymentRecord, status: StatusResult) -> Outcome:
        for confirmation in status.confirmations:
            reference = confirmation.reference
            if reference in self.cache:
                continue
            if not matches_payment(payment, confirmation, self.tolerance):
                logger.debug(f"Подтверждение {reference} не подходит к платежу {payment['id']}")
                continue

            claimed = await self.payments.get_by_tx_hash(reference)
            if claimed is not None:
                self.cache.add(reference)
                if claimed["id"] == payment["id"]:
                    return Outcome.DUPLICATE
                continue

            result = await self.completer.complete(payment["id"], tx_hash=reference)
            self.cache.add(reference)
            return Outcome.COMPLETED if result is not None else Outcome.DUPLICATE

        if status.confirmations:
            logger.warning(
                f"⚠️ Подтверждение для платежа {payment['id']} не совпало "
                f"(адрес, сумма или время), платеж остается PENDING"
            )
        return Outcome.IGNORED

    async def _notify_failed(self, payment: PaymentRecord, label: str) -> None:
        if self.notifier is None:
            return
        try:
            user = await self.users.get(payment["user_id"])
            if user is not None:
                await self.notifier.payment_failed(user["telegram_id"], label)
        except Exception as e:
            logger.error(f"Не удалось уведомить о неудачном платеже {payment['id']}: {e}")

    # --- Telegram Stars ---

    async def validate_pre_checkout(
        self,
        invoice_payload: str,
        total_amount: int,
        currency: str,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Проверка перед списанием звезд.

        Returns:
            None, если оплату можно принимать, иначе текст ошибки для пользователя
        """
        payment = await self.payments.get_by_invoice_payload(invoice_payload)
        now = now or datetime.now(timezone.utc)
        if payment is None or payment["payment_type"] != PaymentMethod.TELEGRAM_STARS.value:
            return "Платеж не найден"
        if payment["status"] != PaymentStatus.PENDING.value:
            return "Платеж уже обработан"
        if payment["expires_at"] < now:
            return "Платеж истек. Создайте новый."
        if currency != "XTR" or Decimal(total_amount) != payment["amount"]:
            return "Сумма платежа не совпадает"
        return None

    async def complete_stars_payment(
        self,
        invoice_payload: str,
        charge_id: str,
        telegram_id: int,
    ) -> Optional[CompletionResult]:
        """successful_payment: завершить Stars платеж по payload счёта

        Raises:
            LatePaymentError: счёт уже EXPIRED/FAILED, звезды возвращаются
        """
        payment = await self.payments.get_by_invoice_payload(invoice_payload)
        if payment is None or payment["payment_type"] != PaymentMethod.TELEGRAM_STARS.value:
            logger.warning(f"successful_payment для неизвестного payload {invoice_payload}")
            return None

        result = await self.completer.complete(payment["id"], charge_id=charge_id)
        if result is None:
            current = await self.payments.get(payment["id"])
            if current is not None and current["status"] in LATE_STATUSES:
                refunded = await self._refund_stars(telegram_id, charge_id)
                logger.error(
                    f"❌ Stars платеж {payment['id']} оплачен в статусе {current['status']}, "
                    f"подписка не выдана, возврат {'выполнен' if refunded else 'НЕ выполнен'} "
                    f"(user={telegram_id}, charge_id={charge_id})"
                )
                raise LatePaymentError(payment["id"], current["status"], refunded=refunded)
            return None

        if self.stars_refund_after_grant:
            await self._refund_stars(telegram_id, charge_id)
        return result

    async def _refund_stars(self, telegram_id: int, charge_id: str) -> bool:
        gateway = self.gateways.get(PaymentMethod.TELEGRAM_STARS)
        if not isinstance(gateway, TelegramStarsGateway):
            return False
        return await gateway.refund(telegram_id, charge_id)

    def clear_cache(self) -> int:
        cleared = self.cache.clear()
        if cleared:
            logger.info(f"🧹 Кэш обработанных транзакций очищен ({cleared})")
        return cleared
