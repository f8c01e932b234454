"""Cycle pricing: adjustments, direct-debit discount, VAT and FX conversion."""
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from pydantic import BaseModel

from agency_billing.models.adjustment import AdjustmentKind, AdjustmentMode, BillingAdjustment
from agency_billing.models.payment_method import PaymentMethodType

CENTS = Decimal("0.01")
UNSUPPORTED_CURRENCY = "unsupported-currency"


def round2(value) -> Decimal:
    """Round half-up to two decimals."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class AdjustmentLine(BaseModel):
    """How one adjustment contributed to the cycle."""

    adjustment_id: Optional[str] = None
    label: str
    kind: str
    mode: str
    currency: Optional[str] = None
    value: Decimal
    computed_usd: Decimal
    applied: bool
    reason: Optional[str] = None


class PricingSnapshot(BaseModel):
    """Frozen pricing of a billing cycle, amounts in USD unless noted."""

    base_amount_usd: Decimal
    adjustments: list[AdjustmentLine]
    adjustments_total_usd: Decimal
    pre_discount_net_usd: Decimal
    discount_pct: Decimal
    discount_amount_usd: Decimal
    net_amount_usd: Decimal
    vat_rate: Decimal
    vat_amount_usd: Decimal
    total_usd: Decimal
    total_local: Decimal
    fx_rate: Decimal
    fx_rate_date: Optional[datetime] = None


def is_adjustment_effective(adjustment: BillingAdjustment, on: datetime) -> bool:
    """True when the adjustment is active and its date range covers ``on``."""
    if not adjustment.active:
        return False
    if adjustment.starts_at is not None and adjustment.starts_at > on:
        return False
    if adjustment.ends_at is not None and adjustment.ends_at < on:
        return False
    return True


def _adjustment_line(base: Decimal, adjustment: BillingAdjustment) -> AdjustmentLine:
    value = Decimal(str(adjustment.value or 0))
    line = dict(
        adjustment_id=str(adjustment.id) if adjustment.id else None,
        label=adjustment.label or adjustment.kind.value,
        kind=adjustment.kind.value,
        mode=adjustment.mode.value,
        currency=adjustment.currency,
        value=value,
    )

    if adjustment.currency and adjustment.currency.upper() != "USD":
        return AdjustmentLine(**line, computed_usd=Decimal("0.00"), applied=False, reason=UNSUPPORTED_CURRENCY)

    raw = base * value / 100 if adjustment.mode == AdjustmentMode.PERCENT else value
    if adjustment.kind == AdjustmentKind.DISCOUNT:
        raw = -abs(raw)
    return AdjustmentLine(**line, computed_usd=round2(raw), applied=True)


def build_pricing_snapshot(
    base_amount_usd,
    adjustments: Iterable[BillingAdjustment],
    method_type: Optional[PaymentMethodType],
    discount_pct,
    vat_rate,
    fx_rate,
    fx_rate_date: Optional[datetime] = None,
) -> PricingSnapshot:
    """
    Price one billing cycle.

    Args:
        base_amount_usd: Plan price before adjustments
        adjustments: Adjustments already filtered to the anchor date
        method_type: Default payment method type of the subscription
        discount_pct: Direct-debit discount percentage
        vat_rate: VAT rate applied on the net amount
        fx_rate: Local currency per USD
        fx_rate_date: Date of the FX quote

    Returns:
        Pricing snapshot with totals in USD and local currency
    """
    base = round2(base_amount_usd)
    lines = [_adjustment_line(base, adjustment) for adjustment in adjustments]
    adjustments_total = round2(sum((line.computed_usd for line in lines), Decimal("0")))

    pre_discount = max(Decimal("0.00"), round2(base + adjustments_total))
    applied_discount_pct = round2(discount_pct) if method_type == PaymentMethodType.DIRECT_DEBIT else Decimal("0.00")
    discount_amount = round2(pre_discount * applied_discount_pct / 100)
    net = max(Decimal("0.00"), round2(pre_discount - discount_amount))

    vat = Decimal(str(vat_rate))
    vat_amount = round2(net * vat)
    total_usd = round2(net + vat_amount)
    fx = Decimal(str(fx_rate))

    return PricingSnapshot(
        base_amount_usd=base,
        adjustments=lines,
        adjustments_total_usd=adjustments_total,
        pre_discount_net_usd=pre_discount,
        discount_pct=applied_discount_pct,
        discount_amount_usd=discount_amount,
        net_amount_usd=net,
        vat_rate=vat,
        vat_amount_usd=vat_amount,
        total_usd=total_usd,
        total_local=round2(total_usd * fx),
        fx_rate=fx,
        fx_rate_date=fx_rate_date,
    )
