"""Unit tests for cycle pricing."""
from decimal import Decimal

from agency_billing.core.pricing import (
    UNSUPPORTED_CURRENCY,
    build_pricing_snapshot,
    is_adjustment_effective,
    round2,
)
from agency_billing.models.adjustment import AdjustmentKind, AdjustmentMode, BillingAdjustment
from agency_billing.models.payment_method import PaymentMethodType
from utils.factories import utc


def _adjustment(kind, mode, value, currency=None, **kwargs) -> BillingAdjustment:
    return BillingAdjustment(
        tenant_id=1,
        kind=kind,
        mode=mode,
        value=Decimal(value),
        currency=currency,
        label=kwargs.pop("label", None),
        active=kwargs.pop("active", True),
        **kwargs,
    )


def test_round2_is_half_up() -> None:
    assert round2("2.675") == Decimal("2.68")
    assert round2(Decimal("0.005")) == Decimal("0.01")
    assert round2(10) == Decimal("10.00")


def test_direct_debit_discount_then_vat_then_fx() -> None:
    """Test the reference pricing: discount before VAT, FX on the USD total."""
    snapshot = build_pricing_snapshot(
        base_amount_usd=Decimal("100"),
        adjustments=[],
        method_type=PaymentMethodType.DIRECT_DEBIT,
        discount_pct=10,
        vat_rate=0.21,
        fx_rate=Decimal("1000"),
    )

    assert snapshot.pre_discount_net_usd == Decimal("100.00")
    assert snapshot.discount_amount_usd == Decimal("10.00")
    assert snapshot.net_amount_usd == Decimal("90.00")
    assert snapshot.vat_amount_usd == Decimal("18.90")
    assert snapshot.total_usd == Decimal("108.90")
    assert snapshot.total_local == Decimal("108900.00")


def test_discount_only_for_direct_debit() -> None:
    for method_type in (PaymentMethodType.QR_FALLBACK, None):
        snapshot = build_pricing_snapshot(100, [], method_type, 10, 0.21, 1000)
        assert snapshot.discount_pct == Decimal("0.00")
        assert snapshot.total_usd == Decimal("121.00")


def test_adjustments_are_applied_before_discount() -> None:
    """Test that percent and absolute adjustments stack on the base amount."""
    adjustments = [
        _adjustment(AdjustmentKind.SURCHARGE, AdjustmentMode.PERCENT, "20", label="Priority support"),
        _adjustment(AdjustmentKind.DISCOUNT, AdjustmentMode.ABSOLUTE, "5", currency="USD"),
    ]

    snapshot = build_pricing_snapshot(100, adjustments, PaymentMethodType.DIRECT_DEBIT, 10, 0.21, 1000)

    assert [line.computed_usd for line in snapshot.adjustments] == [Decimal("20.00"), Decimal("-5.00")]
    assert snapshot.adjustments[0].label == "Priority support"
    assert snapshot.adjustments[1].label == "DISCOUNT"
    assert snapshot.adjustments_total_usd == Decimal("15.00")
    assert snapshot.pre_discount_net_usd == Decimal("115.00")
    assert snapshot.discount_amount_usd == Decimal("11.50")
    assert snapshot.net_amount_usd == Decimal("103.50")
    assert snapshot.vat_amount_usd == Decimal("21.74")
    assert snapshot.total_usd == Decimal("125.24")


def test_non_usd_absolute_adjustment_is_recorded_but_not_applied() -> None:
    adjustments = [_adjustment(AdjustmentKind.SURCHARGE, AdjustmentMode.ABSOLUTE, "5000", currency="ARS")]

    snapshot = build_pricing_snapshot(100, adjustments, None, 10, 0, 1000)

    line = snapshot.adjustments[0]
    assert not line.applied
    assert line.reason == UNSUPPORTED_CURRENCY
    assert line.computed_usd == Decimal("0.00")
    assert snapshot.total_usd == Decimal("100.00")


def test_net_never_goes_negative() -> None:
    adjustments = [_adjustment(AdjustmentKind.DISCOUNT, AdjustmentMode.ABSOLUTE, "150")]

    snapshot = build_pricing_snapshot(100, adjustments, PaymentMethodType.DIRECT_DEBIT, 10, 0.21, 1000)

    assert snapshot.pre_discount_net_usd == Decimal("0.00")
    assert snapshot.net_amount_usd == Decimal("0.00")
    assert snapshot.total_local == Decimal("0.00")


def test_adjustment_effective_window() -> None:
    on = utc(2024, 4, 10, 3)
    windowed = _adjustment(
        AdjustmentKind.TAX, AdjustmentMode.PERCENT, "3", starts_at=utc(2024, 4, 1), ends_at=utc(2024, 4, 30)
    )

    assert is_adjustment_effective(windowed, on)
    assert not is_adjustment_effective(windowed, utc(2024, 5, 10, 3))
    assert not is_adjustment_effective(windowed, utc(2024, 3, 10, 3))
    assert not is_adjustment_effective(_adjustment(AdjustmentKind.TAX, AdjustmentMode.PERCENT, "3", active=False), on)
