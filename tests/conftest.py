"""
Pytest configuration and fixtures for Paycycle tests
"""

import fnmatch
import json
import time
from datetime import datetime, UTC
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from config.orchestrator import (
    AllocationConfig,
    MonitoringConfig,
    OrchestratorConfig,
    RenewalConfig,
    SchedulerConfig,
)
from paycycle.core.enums import (
    CreditTransactionType,
    MonitoringStatus,
    PaymentProvider,
    PaymentPurpose,
    PaymentStatus,
    SubscriptionStatus,
)
from paycycle.core.exceptions import CoordinationStoreError, ProviderUnavailableError
from paycycle.database.models import Base, CreditTransaction, Payment, Subscription, User
from paycycle.orchestrator import build_orchestrator
from paycycle.services.lock_coordinator import RedisLockCoordinator
from paycycle.services.nowpayments_service import ProviderStatus
from paycycle.services.stripe_service import ChargeResult


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeRedisManager:
    """
    In-memory stand-in for RedisManager

    Same method surface: JSON get/set with graceful degradation and the
    coordination primitives that raise CoordinationStoreError. Set
    ``fail = True`` to simulate an unreachable Redis, ``advance()`` to move
    the TTL clock.
    """

    def __init__(self):
        self._values: Dict[str, str] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._expiry: Dict[str, float] = {}
        self._offset = 0.0
        self.fail = False

    # clock / expiry

    def _now(self) -> float:
        return time.monotonic() + self._offset

    def advance(self, seconds: float) -> None:
        self._offset += seconds

    def _purge(self, key: str) -> None:
        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at <= self._now():
            self._values.pop(key, None)
            self._zsets.pop(key, None)
            self._expiry.pop(key, None)

    def _live(self, key: str) -> bool:
        self._purge(key)
        return key in self._values or key in self._zsets

    def _drop(self, key: str) -> bool:
        existed = self._live(key)
        self._values.pop(key, None)
        self._zsets.pop(key, None)
        self._expiry.pop(key, None)
        return existed

    def _require(self) -> None:
        if self.fail:
            raise CoordinationStoreError("Redis is not available")

    # lifecycle

    async def initialize(self) -> bool:
        return not self.fail

    async def close(self) -> None:
        return None

    def is_available(self) -> bool:
        return not self.fail

    def get_stats(self) -> dict:
        return {"is_available": not self.fail, "keys": len(self._values) + len(self._zsets)}

    # JSON values

    async def get(self, key: str, default: Any = None) -> Any:
        if self.fail or not self._live(key) or key not in self._values:
            return default
        value = self._values[key]
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if self.fail:
            return False
        self._drop(key)
        self._values[key] = value if isinstance(value, str) else json.dumps(value, default=str)
        self._expiry[key] = self._now() + (ttl or 300)
        return True

    async def delete(self, key: str) -> bool:
        if self.fail:
            return False
        return self._drop(key)

    async def exists(self, key: str) -> bool:
        if self.fail:
            return False
        return self._live(key)

    async def scan_keys(self, pattern: str) -> List[str]:
        if self.fail:
            return []
        keys = list(self._values) + list(self._zsets)
        return [key for key in keys if self._live(key) and fnmatch.fnmatchcase(key, pattern)]

    # coordination primitives

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        self._require()
        if self._live(key):
            return False
        self._values[key] = value
        self._expiry[key] = self._now() + ttl
        return True

    async def delete_if_equals(self, key: str, value: str) -> bool:
        self._require()
        if self._live(key) and self._values.get(key) == value:
            return self._drop(key)
        return False

    async def get_value(self, key: str) -> Optional[str]:
        self._require()
        return self._values.get(key) if self._live(key) else None

    async def set_value(self, key: str, value: str) -> None:
        self._require()
        self._drop(key)
        self._values[key] = value

    async def zadd(self, key: str, mapping: Dict[str, float], ttl: Optional[int] = None) -> int:
        self._require()
        self._purge(key)
        zset = self._zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        if ttl:
            self._expiry[key] = self._now() + ttl
        return added

    async def zrem(self, key: str, *members: str) -> int:
        self._require()
        self._purge(key)
        zset = self._zsets.get(key, {})
        removed = sum(1 for member in members if zset.pop(member, None) is not None)
        if key in self._zsets and not zset:
            self._drop(key)
        return removed

    async def zrangebyscore(self, key: str, max_score: float, limit: int) -> List[str]:
        self._require()
        self._purge(key)
        zset = self._zsets.get(key, {})
        ordered = sorted(zset.items(), key=lambda item: (item[1], item[0]))
        return [member for member, score in ordered if score <= max_score][:limit]

    async def zscore(self, key: str, member: str) -> Optional[float]:
        self._require()
        self._purge(key)
        return self._zsets.get(key, {}).get(member)

    async def zcard(self, key: str) -> int:
        self._require()
        self._purge(key)
        return len(self._zsets.get(key, {}))

    async def key_exists(self, key: str) -> bool:
        self._require()
        return self._live(key)


class FakeNOWPayments:
    """
    Scripted settlement provider

    script(pid, "confirming", "finished") answers the next polls in order;
    the last answer repeats. Exceptions in the script are raised.
    """

    def __init__(self):
        self.enabled = True
        self.responses: Dict[str, list] = {}
        self.calls: List[str] = []

    def script(self, payment_id: str, *responses) -> None:
        self.responses.setdefault(payment_id, []).extend(responses)

    async def get_payment_status(self, payment_id: str) -> ProviderStatus:
        self.calls.append(payment_id)
        queue = self.responses.get(payment_id)
        if not queue:
            raise ProviderUnavailableError("no scripted response", provider="nowpayments")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, dict):
            return ProviderStatus(status=item["payment_status"], raw=dict(item))
        return ProviderStatus(status=item, raw={"payment_id": payment_id, "payment_status": item})


class FakeStripe:
    """Records charges; next_status/error control the outcome"""

    def __init__(self):
        self.enabled = True
        self.charges: List[Dict[str, Any]] = []
        self.next_status = PaymentStatus.PENDING
        self.error: Optional[Exception] = None
        self.statuses: Dict[str, PaymentStatus] = {}
        self.cancelled: List[str] = []
        self.cancel_error: Optional[Exception] = None

    async def create_charge(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> ChargeResult:
        if self.error is not None:
            raise self.error
        intent_id = f"pi_{len(self.charges) + 1}"
        self.charges.append({
            "id": intent_id,
            "amount_cents": amount_cents,
            "currency": currency,
            "customer_id": customer_id,
            "payment_method_id": payment_method_id,
            "idempotency_key": idempotency_key,
            "metadata": metadata or {},
        })
        return ChargeResult(
            provider_payment_id=intent_id,
            status=self.next_status,
            raw={"id": intent_id, "amount": amount_cents},
        )

    async def retrieve_status(self, payment_intent_id: str) -> ProviderStatus:
        status = self.statuses.get(payment_intent_id, PaymentStatus.PENDING)
        return ProviderStatus(status=status.value, raw={"id": payment_intent_id})

    async def cancel_charge(self, payment_intent_id: str) -> ProviderStatus:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(payment_intent_id)
        self.statuses[payment_intent_id] = PaymentStatus.FAILED
        return ProviderStatus(status=PaymentStatus.FAILED.value, raw={"id": payment_intent_id, "status": "canceled"})


@pytest.fixture(scope="function")
async def test_db_engine():
    """
    Create test database engine
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(test_db_engine) -> async_sessionmaker[AsyncSession]:
    """
    Session maker the services open their own sessions from
    """
    return async_sessionmaker(test_db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    Create test database session
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fake_redis() -> FakeRedisManager:
    return FakeRedisManager()


@pytest.fixture
def make_redis():
    """Factory for extra, independent Redis doubles"""
    return FakeRedisManager


@pytest.fixture
def fake_nowpayments() -> FakeNOWPayments:
    return FakeNOWPayments()


@pytest.fixture
def fake_stripe() -> FakeStripe:
    return FakeStripe()


@pytest.fixture
def orchestrator_config() -> OrchestratorConfig:
    """Explicit values so the environment cannot change test expectations"""
    return OrchestratorConfig(
        monitoring=MonitoringConfig(
            interval_sec=30,
            batch_size=50,
            retry_attempts=3,
            retry_delay_sec=5.0,
        ),
        allocation=AllocationConfig(
            credit_rate=Decimal("1.0"),
            max_allocation=Decimal("10000"),
        ),
        renewal=RenewalConfig(
            interval_sec=300,
            lookahead_minutes=1440,
            batch_size=50,
            retry_minutes=360,
        ),
        scheduler=SchedulerConfig(
            shutdown_timeout_sec=1.0, reconciliation_interval_sec=900, expiry_interval_sec=3600
        ),
    )


@pytest.fixture
def orchestrator(session_maker, fake_redis, fake_nowpayments, fake_stripe, orchestrator_config):
    """Every service wired against SQLite, the Redis double and fake providers"""
    return build_orchestrator(
        session_maker=session_maker,
        redis=fake_redis,
        nowpayments=fake_nowpayments,
        stripe=fake_stripe,
        lock=RedisLockCoordinator(fake_redis),
        config=orchestrator_config,
    )


@pytest.fixture
def now() -> datetime:
    """Current time without microseconds (SQLite round-trips stay exact)"""
    return datetime.now(UTC).replace(microsecond=0)


@pytest.fixture
def make_user(session_maker):
    """Factory: make_user(email=None) -> User"""
    counter = {"n": 0}

    async def _make_user(email: Optional[str] = None) -> User:
        counter["n"] += 1
        async with session_maker() as session:
            user = User(email=email or f"user{counter['n']}@example.com")
            session.add(user)
            await session.commit()
            return user

    return _make_user


@pytest.fixture
def make_topup(session_maker):
    """
    Factory: a NOWPayments credit top-up with its unsettled ledger intent row

    make_topup(user_id, "pid-1", amount="10.00", status="pending", queue=queue)
    """

    async def _make_topup(
        user_id: int,
        provider_payment_id: str,
        amount: str = "10.00",
        status: PaymentStatus = PaymentStatus.PENDING,
        queue=None,
        created_at: Optional[datetime] = None,
    ) -> Payment:
        async with session_maker() as session:
            payment = Payment(
                user_id=user_id,
                provider=PaymentProvider.NOWPAYMENTS.value,
                provider_payment_id=provider_payment_id,
                status=status.value,
                purpose=PaymentPurpose.CREDIT_TOPUP.value,
                amount=Decimal(amount),
                currency="usd",
                provider_data={},
                extra_data={},
            )
            intent = CreditTransaction(
                user_id=user_id,
                type=CreditTransactionType.DEPOSIT.value,
                amount=Decimal("0.00"),
                description=f"Credit top-up ${amount}",
                payment_id=provider_payment_id,
                payment_provider=PaymentProvider.NOWPAYMENTS.value,
                payment_status=status.value,
                monitoring_status=MonitoringStatus.PENDING.value,
                retry_count=0,
                extra_data={"requestedUsd": amount},
                created_at=created_at or datetime.now(UTC),
            )
            session.add_all([payment, intent])
            await session.commit()

        if queue is not None:
            await queue.push(provider_payment_id)
        return payment

    return _make_topup


@pytest.fixture
def make_subscription(session_maker):
    """Factory: an active auto-renewing subscription, any field overridable"""

    async def _make_subscription(user_id: int, **fields) -> Subscription:
        values = {
            "status": SubscriptionStatus.ACTIVE.value,
            "auto_renew": True,
            "currency": "usd",
            "extra_data": {},
        }
        values.update(fields)
        async with session_maker() as session:
            subscription = Subscription(user_id=user_id, **values)
            session.add(subscription)
            await session.commit()
            return subscription

    return _make_subscription


async def reload(session_maker, model, pk):
    """Fresh copy of a row from a new session"""
    async with session_maker() as session:
        return await session.get(model, pk)


@pytest.fixture
def fetch():
    """fetch(session_maker, Model, pk) -> fresh row"""
    return reload
