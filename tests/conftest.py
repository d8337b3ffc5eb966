"""Shared test fixtures for the escrow engine test suite.

Provides:
    - A file-backed SQLite database per test (aiosqlite), schema from the ORM
    - Test settings and a recording payment rail
    - ``Harness``: one place to open units of work and build services
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrow_engine.config import Settings
from escrow_engine.domain.enums import ActorRole, DealCategory
from escrow_engine.domain.milestones import MilestonePlan
from escrow_engine.domain.results import TransitionContext
from escrow_engine.infrastructure.database.engine import session_scope
from escrow_engine.infrastructure.database.orm_models import Base
from escrow_engine.infrastructure.database.repositories import (
    DealRepository,
    EventRepository,
    PayeeAccountRepository,
    PayoutRepository,
)
from escrow_engine.infrastructure.notifications import LoggingNotifier, set_notifier
from escrow_engine.services.deal_service import DealService
from escrow_engine.services.dispute_service import DisputeService
from escrow_engine.services.ledger_service import LedgerService
from escrow_engine.services.milestone_service import MilestoneService
from escrow_engine.services.payout_service import PayoutService
from escrow_engine.services.release_service import ReleaseService

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator

    from escrow_engine.domain.exceptions import PaymentRailError
    from escrow_engine.domain.results import CustodyBalance
    from escrow_engine.infrastructure.database.orm_models import (
        Deal,
        DealEvent,
        PayeeAccount,
        Payout,
    )
    from escrow_engine.infrastructure.notifications import Notification

PAYER_ID = "payer-1"
PAYEE_ID = "payee-1"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class FakeRail:
    """Payment rail that records every call and fails on request."""

    def __init__(self) -> None:
        self.payouts: list[dict] = []
        self.refunds: list[dict] = []
        self.payout_error: PaymentRailError | None = None
        self.refund_error: PaymentRailError | None = None

    async def create_payout(
        self,
        amount: Decimal,
        gross_amount: Decimal,
        fee: Decimal,
        currency: str,
        destination_account_id: str | None,
        deal_id: str,
    ) -> str:
        if self.payout_error is not None:
            raise self.payout_error
        self.payouts.append(
            {
                "amount": amount,
                "gross_amount": gross_amount,
                "fee": fee,
                "currency": currency,
                "destination": destination_account_id,
                "deal_id": deal_id,
            }
        )
        return f"po_test_{len(self.payouts)}"

    async def refund_payment(self, payment_ref: str, amount: Decimal) -> str:
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append({"payment_ref": payment_ref, "amount": amount})
        return f"re_test_{len(self.refunds)}"


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    """Units of work, services and shortcuts shared by service and API tests."""

    session_factory: async_sessionmaker[AsyncSession]
    settings: Settings
    rail: FakeRail
    payer: TransitionContext = field(
        default_factory=lambda: TransitionContext(actor_id=PAYER_ID, actor_role=ActorRole.PAYER)
    )
    payee: TransitionContext = field(
        default_factory=lambda: TransitionContext(actor_id=PAYEE_ID, actor_role=ActorRole.PAYEE)
    )
    admin: TransitionContext = field(
        default_factory=lambda: TransitionContext(actor_id="admin-1", actor_role=ActorRole.ADMIN)
    )
    system: TransitionContext = field(
        default_factory=lambda: TransitionContext(actor_id="system", actor_role=ActorRole.SYSTEM)
    )

    def scope(self):
        return session_scope(self.session_factory)

    def deals(self, session: AsyncSession) -> DealService:
        return DealService(session, self.settings, self.rail, self.session_factory)

    def releases(self, session: AsyncSession) -> ReleaseService:
        return ReleaseService(session, self.settings, self.rail, self.session_factory)

    def milestones(self, session: AsyncSession) -> MilestoneService:
        return MilestoneService(session, self.settings, self.rail, self.session_factory)

    def disputes(self, session: AsyncSession) -> DisputeService:
        return DisputeService(session, self.settings, self.rail, self.session_factory)

    def payouts(self, session: AsyncSession) -> PayoutService:
        return PayoutService(session, self.settings, self.rail)

    async def create_deal(
        self,
        amount: str = "100.00",
        category: DealCategory = DealCategory.SERVICE,
        milestones: list[MilestonePlan] | None = None,
        currency: str = "USD",
    ) -> uuid.UUID:
        async with self.scope() as session:
            deal = await self.deals(session).create_deal(
                payer_id=PAYER_ID,
                payee_id=PAYEE_ID,
                total_amount=Decimal(amount),
                currency=currency,
                category=category,
                context=self.payer,
                title="Test deal",
                milestones=milestones,
            )
            return deal.id

    async def create_funded_deal(
        self,
        amount: str = "100.00",
        category: DealCategory = DealCategory.SERVICE,
        milestones: list[MilestonePlan] | None = None,
        payment_ref: str | None = "pi_test",
        currency: str = "USD",
    ) -> uuid.UUID:
        deal_id = await self.create_deal(amount, category, milestones, currency)
        async with self.scope() as session:
            await self.deals(session).fund_deal(deal_id, self.payer, payment_ref=payment_ref)
        return deal_id

    async def create_milestone_deal(
        self,
        amounts: tuple[str, ...] = ("100.00", "150.00"),
        review_window_days: int = 3,
        revision_limit: int = 1,
        auto_approve: bool = True,
    ) -> tuple[uuid.UUID, list[uuid.UUID]]:
        plans = [
            MilestonePlan(
                title=f"Milestone {index}",
                amount=Decimal(amount),
                due_date=datetime(2026, 4 + index, 1, tzinfo=UTC),
                review_window_days=review_window_days,
                revision_limit=revision_limit,
                auto_approve=auto_approve,
            )
            for index, amount in enumerate(amounts)
        ]
        total = sum((Decimal(a) for a in amounts), Decimal(0))
        deal_id = await self.create_funded_deal(format(total, "f"), DealCategory.SERVICE, plans)
        deal = await self.get_deal(deal_id)
        return deal_id, [m.id for m in deal.milestones]

    async def connect_payee(self, destination: str = "acct_payee") -> None:
        async with self.scope() as session:
            await self.deals(session).connect_payee_account(PAYEE_ID, destination, "USD")

    # --- Read-side shortcuts, each in a fresh session ---

    async def get_deal(self, deal_id: uuid.UUID) -> Deal:
        async with self.session_factory() as session:
            return await DealRepository(session).get_by_id(deal_id)

    async def balance(self, deal_id: uuid.UUID) -> CustodyBalance:
        async with self.session_factory() as session:
            return await LedgerService(session).balance(deal_id)

    async def ledger_types(self, deal_id: uuid.UUID) -> list[str]:
        async with self.session_factory() as session:
            return [entry.type for entry in await LedgerService(session).entries(deal_id)]

    async def events(self, deal_id: uuid.UUID) -> list[DealEvent]:
        async with self.session_factory() as session:
            return await EventRepository(session).list_for_deal(deal_id)

    async def event_types(self, deal_id: uuid.UUID) -> list[str]:
        return [event.event_type for event in await self.events(deal_id)]

    async def payee_account(self, currency: str = "USD") -> PayeeAccount | None:
        async with self.session_factory() as session:
            return await PayeeAccountRepository(session).get(PAYEE_ID, currency)

    async def deal_payouts(self, deal_id: uuid.UUID) -> list[Payout]:
        async with self.session_factory() as session:
            return await PayoutRepository(session).list_for_deal(deal_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'escrow_test.db'}"


@pytest.fixture
def settings(database_url: str) -> Settings:
    return Settings(
        _env_file=None,
        app_env="test",
        app_log_level="WARNING",
        database_url=database_url,
        cron_secret="",
        platform_fee_rate=Decimal("0.08"),
        default_review_window_days=3,
        default_revision_limit=1,
        issue_payouts_after_commit=True,
        payment_rail_timeout_seconds=2.0,
    )


@pytest_asyncio.fixture
async def session_factory(database_url: str) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture
def rail() -> FakeRail:
    return FakeRail()


@pytest.fixture
def notifier() -> Iterator[RecordingNotifier]:
    recording = RecordingNotifier()
    set_notifier(recording)
    yield recording
    set_notifier(LoggingNotifier())


@pytest.fixture
def harness(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    rail: FakeRail,
) -> Harness:
    return Harness(session_factory=session_factory, settings=settings, rail=rail)
