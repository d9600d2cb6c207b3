"""Каталог тарифов: цена за способ оплаты и длительность"""
from datetime import timedelta
from decimal import Decimal
from typing import Mapping, Union

from subscription_bot.constants import (
    DEFAULT_PLAN_DURATIONS,
    DEFAULT_PLAN_PRICES,
    METHOD_CURRENCIES,
    PLAN_TITLES,
)
from subscription_bot.errors import UnknownPlanError, UnsupportedPaymentMethodError
from subscription_bot.models.payment import PaymentMethod, PlanType

Number = Union[int, float, str, Decimal]


class PlanCatalog:
    """Статический каталог тарифов, собранный из конфигурации"""

    def __init__(
        self,
        prices: Mapping[str, Mapping[str, Number]] = DEFAULT_PLAN_PRICES,
        durations: Mapping[str, Number] = DEFAULT_PLAN_DURATIONS,
    ):
        self._prices: dict[PlanType, dict[PaymentMethod, Decimal]] = {}
        self._durations: dict[PlanType, timedelta] = {}

        for plan_name, seconds in durations.items():
            plan = self.resolve(plan_name)
            self._durations[plan] = timedelta(seconds=float(seconds))

        for plan_name, by_method in prices.items():
            plan = self.resolve(plan_name)
            if plan not in self._durations:
                raise ValueError(f"Для тарифа {plan.value} не задана длительность")
            self._prices[plan] = {
                PaymentMethod(method): Decimal(str(price)) for method, price in by_method.items()
            }

    @staticmethod
    def resolve(plan: Union[str, PlanType]) -> PlanType:
        """Приводит идентификатор тарифа к PlanType"""
        if isinstance(plan, PlanType):
            return plan
        try:
            return PlanType(str(plan).upper())
        except ValueError:
            raise UnknownPlanError(str(plan)) from None

    def plans(self) -> list[PlanType]:
        return [plan for plan in PlanType if plan in self._prices]

    def duration(self, plan: Union[str, PlanType]) -> timedelta:
        plan = self.resolve(plan)
        if plan not in self._durations:
            raise UnknownPlanError(plan.value)
        return self._durations[plan]

    def price(self, plan: Union[str, PlanType], method: PaymentMethod) -> Decimal:
        plan = self.resolve(plan)
        if plan not in self._prices:
            raise UnknownPlanError(plan.value)
        try:
            return self._prices[plan][method]
        except KeyError:
            raise UnsupportedPaymentMethodError(method.value) from None

    def supports(self, plan: Union[str, PlanType], method: PaymentMethod) -> bool:
        try:
            self.price(plan, method)
        except (UnknownPlanError, UnsupportedPaymentMethodError):
            return False
        return True

    @staticmethod
    def currency(method: PaymentMethod) -> str:
        return METHOD_CURRENCIES[method.value]

    @staticmethod
    def title(plan: Union[str, PlanType]) -> str:
        plan = PlanCatalog.resolve(plan)
        return PLAN_TITLES.get(plan.value, plan.value)
