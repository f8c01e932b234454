"""Test data factories using Faker for generating realistic test data."""
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from faker import Faker
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.auth.context import BillingContext, Role
from agency_billing.config import Settings
from agency_billing.models.mandate import MandateStatus
from agency_billing.services.cycle_service import CycleRunResult, CycleService
from agency_billing.services.mandate_service import MandateService, MandateUpsertResult

fake = Faker()

# 22-digit account numbers with valid check digits
VALID_ACCOUNT_NUMBER = "2850590940090418135201"
OTHER_VALID_ACCOUNT_NUMBER = "0070999000000000000017"
INVALID_ACCOUNT_NUMBER = "2850590940090418135202"


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    """Aware UTC datetime."""
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


class MandateFactory:
    """Factory for direct-debit mandate submissions."""

    @staticmethod
    def create(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Create mandate submission data.

        Args:
            overrides: Optional field overrides

        Returns:
            dict: Mandate request body
        """
        data = {
            "holder_name": fake.name(),
            "tax_id": str(fake.random_number(digits=11, fix_len=True)),
            "account_number": VALID_ACCOUNT_NUMBER,
            "consent_accepted": True,
            "consent_version": "v1",
        }
        if overrides:
            data.update(overrides)
        return data


class AdjustmentFactory:
    """Factory for billing adjustment payloads."""

    @staticmethod
    def create(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        data = {
            "kind": "DISCOUNT",
            "mode": "PERCENT",
            "value": "5",
            "label": f"{fake.word().title()} promo",
            "starts_at": None,
            "ends_at": None,
            "active": True,
        }
        if overrides:
            data.update(overrides)
        return data


def tenant_context(tenant_id: int, role: Role = Role.OWNER) -> BillingContext:
    return BillingContext(tenant_id=tenant_id, actor_id=f"user-{fake.uuid4()[:8]}", role=role)


async def create_mandate(
    db: AsyncSession,
    settings: Settings,
    tenant_id: int,
    now: datetime,
    account_number: str = VALID_ACCOUNT_NUMBER,
    activate: bool = True,
) -> MandateUpsertResult:
    """Submit a direct-debit mandate for a tenant and optionally activate it."""
    service = MandateService(db, settings)
    data = MandateFactory.create({"account_number": account_number})
    result = await service.upsert_direct_debit_mandate(
        tenant_context(tenant_id),
        holder_name=data["holder_name"],
        tax_id=data["tax_id"],
        account_number=data["account_number"],
        consent_ip="203.0.113.10",
        now=now,
    )
    if activate:
        await service.transition_mandate_status(
            result.mandate.id, MandateStatus.ACTIVE, actor_id="bank-sync", bank_reference="MAND-1", now=now
        )
    return result


async def create_billed_tenant(
    db: AsyncSession,
    settings: Settings,
    tenant_id: int,
    anchor: datetime,
    base_amount_usd: Decimal = Decimal("100.00"),
    fx_rate: Decimal = Decimal("1000"),
    activate: bool = True,
) -> CycleRunResult:
    """Tenant with an ACTIVE mandate and a materialized cycle for ``anchor``."""
    await create_mandate(db, settings, tenant_id, now=anchor, activate=activate)
    return await CycleService(db, settings).run_anchor(
        tenant_id, anchor, fx_rate=fx_rate, base_amount_usd=base_amount_usd, actor_id="cycle-job"
    )


def build_galicia_response(
    records: Iterable[tuple[str, str, Decimal]],
    business_day: date,
    declared_count: Optional[int] = None,
    declared_amount: Optional[Decimal] = None,
    company_code: str = "0001",
) -> bytes:
    """
    Build a Galicia PD v1 response file.

    Args:
        records: (external reference, result code, amount) per detail line
        business_day: Day written in the header and timestamps
        declared_count: Trailer record count; defaults to the real count
        declared_amount: Trailer amount; defaults to the real sum

    Returns:
        File bytes
    """
    records = list(records)
    count = len(records) if declared_count is None else declared_count
    amount = sum((r[2] for r in records), Decimal("0")) if declared_amount is None else declared_amount
    day = business_day.strftime("%Y%m%d")
    messages = {"00": "APROBADO", "51": "FONDOS INSUFICIENTES"}

    lines = [f"H|GALICIA_PD_RESP|v1.0|{company_code}|PD|{day}|{count}|{amount:.2f}|"]
    for seq, (reference, code, row_amount) in enumerate(records, start=1):
        lines.append(
            f"D|{seq}|{reference}|{code}|{messages.get(code, 'RECHAZADO')}|{row_amount:.2f}|{day}120000|TR{seq:06d}|OP{seq}"
        )
    lines.append(f"T|{count}|{amount:.2f}|")
    return ("\n".join(lines) + "\n").encode("utf-8")
