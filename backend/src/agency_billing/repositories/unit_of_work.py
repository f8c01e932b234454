"""Unit of work: one session, one transaction, all repositories."""
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agency_billing.repositories.adjustments import AdjustmentRepository
from agency_billing.repositories.attempts import AttemptRepository
from agency_billing.repositories.batches import BatchRepository
from agency_billing.repositories.charges import ChargeRepository
from agency_billing.repositories.events import BillingEventRepository
from agency_billing.repositories.fallback_intents import FallbackIntentRepository
from agency_billing.repositories.mandates import MandateRepository
from agency_billing.repositories.subscriptions import SubscriptionRepository

logger = structlog.get_logger(__name__)


class UnitOfWork:
    """
    Transaction boundary for jobs and scripts outside the request scope.

    Commits when the block exits cleanly and rolls back on any exception, so
    multi-step writes are never partially visible.

    Example:
        async with UnitOfWork(session_factory) as uow:
            await CycleService(uow.session, settings).run_anchor(...)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "UnitOfWork":
        self.session = self._session_factory()
        self.subscriptions = SubscriptionRepository(self.session)
        self.charges = ChargeRepository(self.session)
        self.attempts = AttemptRepository(self.session)
        self.mandates = MandateRepository(self.session)
        self.batches = BatchRepository(self.session)
        self.events = BillingEventRepository(self.session)
        self.fallback_intents = FallbackIntentRepository(self.session)
        self.adjustments = AdjustmentRepository(self.session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                await self.session.commit()
            else:
                await self.session.rollback()
                logger.warning("unit_of_work_rolled_back", error_type=exc_type.__name__)
        finally:
            await self.session.close()

    async def commit(self) -> None:
        """Commit early, e.g. before a side effect that must see the data."""
        await self.session.commit()
