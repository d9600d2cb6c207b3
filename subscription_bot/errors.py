"""Исключения платежного ядра"""


class PaymentError(Exception):
    """Базовая ошибка платежной подсистемы"""


class UnknownPlanError(PaymentError):
    """Тариф не найден в каталоге"""

    def __init__(self, plan: str):
        super().__init__(f"Неизвестный тариф: {plan}")
        self.plan = plan


class UnsupportedPaymentMethodError(PaymentError):
    """Способ оплаты не поддерживается тарифом или шлюзом"""

    def __init__(self, method: str):
        super().__init__(f"Способ оплаты не поддерживается: {method}")
        self.method = method


class InvalidSignatureError(PaymentError):
    """Подпись webhook не прошла проверку"""


class MalformedPayloadError(PaymentError):
    """Тело webhook не удалось разобрать"""


class GatewayError(PaymentError):
    """
    Ошибка внешнего платежного провайдера

    retryable=True означает, что платеж нужно оставить в PENDING
    и повторить попытку на следующем проходе.
    """

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayRetryableError(GatewayError):
    """Rate limit, таймаут, сетевая ошибка или 5xx"""

    retryable = True


class GatewayRejectedError(GatewayError):
    """Провайдер отклонил запрос (ошибка валидации)"""


class DuplicateReferenceError(PaymentError):
    """Внешняя ссылка (payload, charge id, tx hash) уже записана на другой платеж"""

    def __init__(self, reference: str | None = None):
        super().__init__(f"Внешняя ссылка уже обработана: {reference}")
        self.reference = reference


class SubscriptionChangedError(PaymentError):
    """Подписка выключена между чтением и продлением, транзакцию нужно повторить"""


class LatePaymentError(PaymentError):
    """Оплата пришла по счёту, который уже закрыт без оплаты"""

    def __init__(self, payment_id: str, status: str, *, refunded: bool):
        super().__init__(f"Платеж {payment_id} оплачен в статусе {status}")
        self.payment_id = payment_id
        self.status = status
        self.refunded = refunded
