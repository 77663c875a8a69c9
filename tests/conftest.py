"""Test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (aiosqlite, one shared
connection through StaticPool), a recording fake payment gateway, a recording
notifier and a frozen clock, all wired into a ``JobLifecycle``.
"""

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace.database import Base, get_db
from marketplace.main import app
from marketplace.models.counter_offer import CounterOffer  # noqa: F401  (registers the table)
from marketplace.models.job import Job, JobTimeline, PaymentType
from marketplace.models.payment import PaymentProfile, PaymentTransaction
from marketplace.services.gateway import GatewayError
from marketplace.services.job import JobLifecycle, get_lifecycle

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeGateway:
    """Records every call. Replaying an idempotency key returns the same id.

    Queue a failure for the next call of an operation with ``fail_next``.
    """

    provider = "fake"

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Decimal | None]] = []
        self.ids: dict[str, str] = {}
        self.failures: dict[str, GatewayError] = {}

    def fail_next(self, operation: str, message: str = "declined", retryable: bool = True) -> None:
        self.failures[operation] = GatewayError(message, retryable=retryable)

    def calls_for(self, operation: str) -> list[tuple[str, str, Decimal | None]]:
        return [c for c in self.calls if c[0] == operation]

    async def _call(self, operation: str, prefix: str, key: str, amount: Decimal | None) -> str:
        self.calls.append((operation, key, amount))
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error
        if key not in self.ids:
            self.ids[key] = f"{prefix}_{len(self.ids) + 1}"
        return self.ids[key]

    async def authorize_charge(self, payer, amount, idempotency_key, *, payment_method=None, metadata=None):
        return await self._call("authorize_charge", "pi", idempotency_key, amount)

    async def capture_hold(self, hold_id, idempotency_key):
        return await self._call("capture_hold", "ch", idempotency_key, None)

    async def transfer(self, destination, amount, idempotency_key, *, metadata=None):
        return await self._call("transfer", "tr", idempotency_key, amount)

    async def refund(self, charge_id, amount, idempotency_key):
        return await self._call("refund", "re", idempotency_key, amount)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, uuid.UUID, uuid.UUID, dict]] = []

    async def notify(self, event_type, job_id, recipient_id, payload) -> None:
        self.events.append((event_type, job_id, recipient_id, payload))

    def types(self) -> list[str]:
        return [e[0] for e in self.events]


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Engine under test
# ---------------------------------------------------------------------------

@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def lifecycle(gateway: FakeGateway, notifier: RecordingNotifier, clock: FrozenClock) -> JobLifecycle:
    return JobLifecycle(gateway, notifier, fee_rate=Decimal("0.10"), clock=clock)


# ---------------------------------------------------------------------------
# Parties and jobs
# ---------------------------------------------------------------------------

@pytest.fixture
def poster_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def helper_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def other_helper_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest_asyncio.fixture
async def profiles(
    session_factory: async_sessionmaker[AsyncSession],
    poster_id: uuid.UUID,
    helper_id: uuid.UUID,
    other_helper_id: uuid.UUID,
) -> None:
    """Poster can pay; both helpers can be paid out."""
    async with session_factory() as session:
        session.add_all([
            PaymentProfile(user_id=poster_id, customer_id="cus_poster", default_payment_method="pm_card"),
            PaymentProfile(user_id=helper_id, payout_account_id="acct_helper", payout_enabled=True),
            PaymentProfile(user_id=other_helper_id, payout_account_id="acct_other", payout_enabled=True),
        ])
        await session.commit()


STAGES = ("posted", "confirmed", "ongoing", "completed", "paid")


@pytest.fixture
def make_job(
    session_factory: async_sessionmaker[AsyncSession],
    lifecycle: JobLifecycle,
    poster_id: uuid.UUID,
    helper_id: uuid.UUID,
    profiles: None,
) -> Callable[..., Awaitable[uuid.UUID]]:
    """Create a job and drive it through the lifecycle up to ``stage``."""

    async def _make(
        stage: str = "posted",
        *,
        price: Decimal = Decimal("100.00"),
        payment_type: PaymentType = PaymentType.FIXED,
        hourly_rate: Decimal | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> uuid.UUID:
        reached = STAGES.index(stage)
        async with session_factory() as session:
            job = await lifecycle.create_job(
                session,
                poster_id,
                title="Assemble a bookshelf",
                price=price,
                payment_type=payment_type,
                hourly_rate=hourly_rate,
                start_time=start_time,
                end_time=end_time,
            )
            job_id = job.id
            if reached >= 1:
                await lifecycle.offers.direct_accept(session, job_id, helper_id)
            if reached >= 2:
                await lifecycle.start(session, job_id, helper_id)
            if reached >= 3:
                await lifecycle.complete(session, job_id, helper_id)
            if reached >= 4:
                await lifecycle.finish(session, job_id, poster_id)
        return job_id

    return _make


@pytest.fixture
def load_job(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[uuid.UUID], Awaitable[Job]]:
    """Read a job back through a fresh session."""

    async def _load(job_id: uuid.UUID) -> Job:
        async with session_factory() as session:
            return (await session.execute(select(Job).where(Job.id == job_id))).scalar_one()

    return _load


@pytest.fixture
def load_timeline(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[uuid.UUID], Awaitable[JobTimeline]]:
    async def _load(job_id: uuid.UUID) -> JobTimeline:
        async with session_factory() as session:
            return (
                await session.execute(select(JobTimeline).where(JobTimeline.job_id == job_id))
            ).scalar_one()

    return _load


@pytest.fixture
def ledger_rows(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[uuid.UUID], Awaitable[list[PaymentTransaction]]]:
    async def _rows(job_id: uuid.UUID) -> list[PaymentTransaction]:
        async with session_factory() as session:
            result = await session.execute(
                select(PaymentTransaction).where(PaymentTransaction.order_id == job_id)
            )
            return list(result.scalars().all())

    return _rows


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession], lifecycle: JobLifecycle
) -> AsyncGenerator[AsyncClient, None]:
    async def _get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
