"""Расчет нового срока подписки после успешной оплаты"""
from datetime import datetime, timedelta
from typing import Optional, Sequence

from subscription_bot.models.subscription import ExtensionAction, ExtensionDecision, SubscriptionRecord


def pick_latest_active(rows: Sequence[SubscriptionRecord], now: datetime) -> Optional[SubscriptionRecord]:
    """Активная подписка с самым поздним end_date (если их вдруг несколько)"""
    active = [row for row in rows if row["is_active"] and row["end_date"] >= now]
    if not active:
        return None
    return max(active, key=lambda row: row["end_date"])


def calculate_extension(
    rows: Sequence[SubscriptionRecord],
    *,
    plan_type: str,
    duration: timedelta,
    now: datetime,
    payment_id: str,
) -> ExtensionDecision:
    """
    Продление или новая подписка.

    Есть действующая подписка: новый период начинается с её end_date,
    строка обновляется на месте (end_date, plan_type), payment_id не трогаем.
    Нет: период [now, now + duration) в новой строке со ссылкой на платеж.
    """
    existing = pick_latest_active(rows, now)

    if existing is not None:
        start = existing["end_date"]
        return ExtensionDecision(
            action=ExtensionAction.EXTEND,
            start_date=start,
            end_date=start + duration,
            plan_type=plan_type,
            payment_id=payment_id,
            subscription_id=existing["id"],
        )

    return ExtensionDecision(
        action=ExtensionAction.CREATE,
        start_date=now,
        end_date=now + duration,
        plan_type=plan_type,
        payment_id=payment_id,
    )
