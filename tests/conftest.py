"""Shared test fixtures for the marketplace escrow test suite.

Provides:
    - An in-memory SQLite database (aiosqlite) with the full schema
    - A recording fake of the PaymentGateway protocol
    - An in-memory stand-in for the Redis commands used for idempotency
    - An HTTP client bound to the app with its dependencies overridden
    - Factory functions for creating orders in any lifecycle state
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

import hashlib
import hmac
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from marketplace_escrow.api import deps
from marketplace_escrow.config import Settings
from marketplace_escrow.domain.enums import MilestoneStatus
from marketplace_escrow.domain.exceptions import GatewayError
from marketplace_escrow.domain.gateway_protocol import (
    InitiatePaymentRequest,
    InitiatePaymentResult,
    PaymentStatusSnapshot,
    ReleaseRequest,
    TransferResult,
)
from marketplace_escrow.domain.milestones import compute_milestones
from marketplace_escrow.gateways.neero import NeeroGatewayClient
from marketplace_escrow.infrastructure.database.orm_models import Base, Order, Payment
from marketplace_escrow.main import create_app

BUYER = "buyer_1"
PROVIDER = "provider_1"
STRANGER = "stranger_1"
WEBHOOK_SECRET = "whsec_test"


def sign(raw_body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """HMAC-SHA256 hex signature, as the gateway computes it."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Gateway Fake
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory PaymentGateway that records every call.

    Transaction ids are ``tx_1``, ``tx_2``, ... in initiation order.
    Set ``fail_with`` to make calls raise that GatewayError; ``fail_after``
    lets that many calls succeed first. ``before_release`` runs inside
    every release call, before the transfer is made.
    """

    name = "neero"

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET) -> None:
        self.webhook_secret = webhook_secret
        self.initiated: list[InitiatePaymentRequest] = []
        self.released: list[ReleaseRequest] = []
        self.refunded: list[str] = []
        self.fail_with: GatewayError | None = None
        self.fail_after = 0
        self.before_release: Callable[[], Awaitable[None]] | None = None
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _maybe_fail(self) -> None:
        if self.fail_with is None:
            return
        if self.fail_after > 0:
            self.fail_after -= 1
            return
        raise self.fail_with

    async def initiate(self, request: InitiatePaymentRequest) -> InitiatePaymentResult:
        self._maybe_fail()
        self.initiated.append(request)
        tx = self._next("tx")
        return InitiatePaymentResult(
            transaction_id=tx,
            payment_url=f"https://checkout.neero.test/{tx}",
            reference=f"ref_{tx}",
        )

    async def get_status(self, transaction_id: str) -> PaymentStatusSnapshot:
        self._maybe_fail()
        return PaymentStatusSnapshot(
            transaction_id=transaction_id,
            status="completed",
            amount=Decimal("0"),
            currency="USD",
        )

    async def release(self, request: ReleaseRequest) -> TransferResult:
        if self.before_release is not None:
            await self.before_release()
        self._maybe_fail()
        self.released.append(request)
        return TransferResult(transfer_id=self._next("trf"), status="pending")

    async def refund(
        self, transaction_id: str, amount: Decimal | None = None
    ) -> TransferResult:
        self._maybe_fail()
        self.refunded.append(transaction_id)
        return TransferResult(transfer_id=self._next("rfd"), status="pending")

    def verify_signature(self, raw_payload: bytes, signature: str | None) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(sign(raw_payload, self.webhook_secret), signature)


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings that ignore any local .env file."""
    return Settings(
        _env_file=None,
        app_env="development",
        neero_api_key="test-key",
        neero_merchant_id="merchant_1",
        neero_webhook_secret=WEBHOOK_SECRET,
    )


@pytest_asyncio.fixture
async def db_engine() -> AsyncIterator[AsyncEngine]:
    """A fresh in-memory database per test, shared by all its sessions."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


# ---------------------------------------------------------------------------
# Data Factories
# ---------------------------------------------------------------------------


OrderFactory = Callable[..., Awaitable[Order]]


@pytest.fixture
def make_order(db_session: AsyncSession) -> OrderFactory:
    """Insert an order directly, bypassing the services."""

    async def _factory(
        agreed_price: Decimal | str = Decimal("50000.00"),
        status: str = "active",
        escrow_funded: bool = False,
        metadata: dict[str, Any] | None = None,
        buyer_id: str = BUYER,
        provider_ids: list[str] | None = None,
        currency: str = "USD",
    ) -> Order:
        order = Order(
            buyer_id=buyer_id,
            provider_ids=[PROVIDER] if provider_ids is None else provider_ids,
            job_ids=["job_1"],
            agreed_price=Decimal(str(agreed_price)),
            currency=currency,
            status=status,
            escrow_funded=escrow_funded,
            metadata_json=metadata,
        )
        db_session.add(order)
        await db_session.flush()
        return order

    return _factory


@pytest.fixture
def make_payment(db_session: AsyncSession) -> Callable[..., Awaitable[Payment]]:
    """Insert a payment row for an order."""

    async def _factory(
        order: Order,
        transaction_id: str,
        amount: Decimal | str,
        status: str = "pending",
    ) -> Payment:
        amount = Decimal(str(amount))
        payment = Payment(
            order_id=order.id,
            amount=amount,
            commission=(amount * Decimal("0.10")).quantize(Decimal("0.01")),
            status=status,
            payment_gateway="neero",
            payment_gateway_ref=transaction_id,
        )
        db_session.add(payment)
        await db_session.flush()
        return payment

    return _factory


def plan_metadata(
    total: Decimal | str,
    statuses: list[str],
    transaction_ids: list[str | None] | None = None,
    payment_ids: list[uuid.UUID | None] | None = None,
) -> dict[str, Any]:
    """Build stored metadata for ``total`` with the given milestone statuses."""
    plan = compute_milestones(Decimal(str(total)))
    for i, milestone in enumerate(plan.milestones):
        milestone.status = MilestoneStatus(statuses[i])
        if transaction_ids and transaction_ids[i]:
            milestone.transaction_id = transaction_ids[i]
        if payment_ids and payment_ids[i]:
            milestone.payment_id = str(payment_ids[i])
    return plan.to_metadata()


# ---------------------------------------------------------------------------
# API Fixtures
# ---------------------------------------------------------------------------


class FakeRedis:
    """The subset of redis.asyncio.Redis the app calls, kept in a dict."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    async def set(
        self, key: str, value: str, ex: int | None = None, nx: bool = False
    ) -> bool | None:
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key: str) -> int:
        return 1 if self.store.pop(key, None) is not None else 0

    async def ping(self) -> bool:
        return True


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGateway,
    fake_redis: FakeRedis,
) -> AsyncIterator[AsyncClient]:
    """HTTP client for the app, without running its startup lifespan.

    Collections go to the recording fake; webhooks are verified by a real
    Neero client holding the test secret.
    """
    app = create_app()

    async def _get_db_session() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def _get_webhook_gateway(gateway: str) -> NeeroGatewayClient:
        if gateway.lower() != NeeroGatewayClient.name:
            return deps.get_webhook_gateway(gateway)
        return NeeroGatewayClient(webhook_secret=WEBHOOK_SECRET)

    app.dependency_overrides[deps.get_db_session] = _get_db_session
    app.dependency_overrides[deps.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_webhook_gateway] = _get_webhook_gateway
    app.dependency_overrides[deps.get_redis_client] = lambda: fake_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client
