"""
Проверки на настоящем PostgreSQL: блокировки и уникальные индексы.
Запускаются только при заданном TEST_DATABASE_URL.
"""
import asyncio
import os
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import asyncpg
import pytest
import pytest_asyncio

from subscription_bot.db.pool import init_schema
from subscription_bot.db.repositories.payments import PaymentRepository
from subscription_bot.db.repositories.subscriptions import SubscriptionRepository
from subscription_bot.db.repositories.users import UserRepository
from subscription_bot.errors import DuplicateReferenceError
from subscription_bot.models.payment import PaymentMethod
from subscription_bot.services.completion import PaymentCompleter
from subscription_bot.services.plans import PlanCatalog

DATABASE_URL = os.getenv("TEST_DATABASE_URL")
CHANNEL_ID = "-100777"

pytestmark = pytest.mark.skipif(not DATABASE_URL, reason="TEST_DATABASE_URL не задан")


@pytest_asyncio.fixture
async def pg_pool():
    pool = await asyncpg.create_pool(DATABASE_URL, min_size=1, max_size=5)
    await init_schema(pool)
    yield pool
    await pool.close()


@pytest.fixture
def repos(pg_pool):
    return UserRepository(pg_pool), PaymentRepository(pg_pool), SubscriptionRepository(pg_pool)


async def _pending(repos, plan="WEEK"):
    users, payments, _ = repos
    user = await users.get_or_create(random.randint(10**9, 10**12), "pg", "Test", None)
    payment = await payments.create(
        user_id=user["id"], amount=Decimal("60"), currency="TRX", plan_type=plan,
        method=PaymentMethod.CRYPTO_TRX, expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        expected_amount=Decimal("60"),
    )
    return user, payment


@pytest.mark.asyncio
async def test_concurrent_completion_grants_once(pg_pool, repos):
    users, payments, subscriptions = repos
    completer = PaymentCompleter(pg_pool, payments, subscriptions, users, PlanCatalog(), CHANNEL_ID)
    user, payment = await _pending(repos)

    results = await asyncio.gather(*[
        completer.complete(payment["id"], tx_hash=f"pg-{payment['id']}") for _ in range(5)
    ])

    assert sum(result is not None for result in results) == 1
    stored = await payments.get(payment["id"])
    assert stored["status"] == "COMPLETED"
    assert await subscriptions.has_active(user["id"], CHANNEL_ID, datetime.now(timezone.utc))


@pytest.mark.asyncio
async def test_tx_hash_cannot_complete_two_payments(pg_pool, repos):
    users, payments, subscriptions = repos
    completer = PaymentCompleter(pg_pool, payments, subscriptions, users, PlanCatalog(), CHANNEL_ID)
    _, first = await _pending(repos)
    second_user, second = await _pending(repos)
    tx_hash = f"pg-shared-{first['id']}"

    assert await completer.complete(first["id"], tx_hash=tx_hash) is not None
    assert await completer.complete(second["id"], tx_hash=tx_hash) is None

    assert (await payments.get(second["id"]))["status"] == "PENDING"
    assert not await subscriptions.has_active(second_user["id"], CHANNEL_ID, datetime.now(timezone.utc))


@pytest.mark.asyncio
async def test_payments_of_one_user_stack(pg_pool, repos):
    users, payments, subscriptions = repos
    completer = PaymentCompleter(pg_pool, payments, subscriptions, users, PlanCatalog(), CHANNEL_ID)
    user, first = await _pending(repos)
    second = await payments.create(
        user_id=user["id"], amount=Decimal("10"), currency="TRX", plan_type="DAY",
        method=PaymentMethod.CRYPTO_TRX, expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    now = datetime.now(timezone.utc)

    await asyncio.gather(
        completer.complete(first["id"], tx_hash=f"pg-a-{first['id']}", now=now),
        completer.complete(second["id"], tx_hash=f"pg-b-{second['id']}", now=now),
    )

    current = await subscriptions.get_current(user["id"], CHANNEL_ID, now)
    assert current["end_date"] == now + timedelta(days=8)


@pytest.mark.asyncio
async def test_duplicate_invoice_payload(repos):
    users, payments, _ = repos
    user = await users.get_or_create(random.randint(10**9, 10**12))
    payload = f"payment_pg_{random.getrandbits(32):08x}"
    fields = dict(
        user_id=user["id"], amount=Decimal("399"), currency="XTR", plan_type="DAY",
        method=PaymentMethod.TELEGRAM_STARS, expires_at=datetime.now(timezone.utc) + timedelta(minutes=30),
        invoice_payload=payload,
    )

    await payments.create(**fields)
    with pytest.raises(DuplicateReferenceError):
        await payments.create(**fields)
