"""Payment method and mandate repository."""
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.models.base import utcnow
from agency_billing.models.mandate import Mandate
from agency_billing.models.payment_method import PaymentMethod, PaymentMethodType


class MandateRepository:
    """Payment methods of a subscription and their direct-debit mandates."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_methods(self, subscription_id: UUID) -> list[PaymentMethod]:
        result = await self.db.execute(
            select(PaymentMethod).where(PaymentMethod.subscription_id == subscription_id).order_by(PaymentMethod.created_at)
        )
        return list(result.scalars().all())

    async def get_method(self, subscription_id: UUID, method_type: PaymentMethodType) -> Optional[PaymentMethod]:
        result = await self.db.execute(
            select(PaymentMethod).where(
                PaymentMethod.subscription_id == subscription_id,
                PaymentMethod.method_type == method_type,
            )
        )
        return result.scalar_one_or_none()

    async def get_default_method(self, subscription_id: UUID) -> Optional[PaymentMethod]:
        result = await self.db.execute(
            select(PaymentMethod).where(
                PaymentMethod.subscription_id == subscription_id,
                PaymentMethod.is_default.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def clear_defaults(self, subscription_id: UUID) -> None:
        """Unset is_default on every method of the subscription."""
        await self.db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.subscription_id == subscription_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )

    async def add_method(self, method: PaymentMethod) -> PaymentMethod:
        self.db.add(method)
        await self.db.flush()
        return method

    async def get_mandate(self, mandate_id: UUID) -> Optional[Mandate]:
        return await self.db.get(Mandate, mandate_id)

    async def get_mandate_for_method(self, payment_method_id: UUID) -> Optional[Mandate]:
        result = await self.db.execute(select(Mandate).where(Mandate.payment_method_id == payment_method_id))
        return result.scalar_one_or_none()

    async def find_by_account_hash(self, account_hash: str) -> list[Mandate]:
        result = await self.db.execute(select(Mandate).where(Mandate.account_hash == account_hash))
        return list(result.scalars().all())

    async def add_mandate(self, mandate: Mandate) -> Mandate:
        self.db.add(mandate)
        await self.db.flush()
        return mandate
