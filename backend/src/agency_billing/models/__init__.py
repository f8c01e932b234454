"""SQLAlchemy ORM models for the billing engine."""
# Import all models here to ensure they are registered with Alembic

from agency_billing.models.base import Base
from agency_billing.models.subscription import Subscription, SubscriptionStatus
from agency_billing.models.cycle import BillingCycle, CycleStatus
from agency_billing.models.charge import Charge, ChargeKind, ChargeStatus, ReconciliationStatus
from agency_billing.models.attempt import Attempt, AttemptChannel, AttemptStatus
from agency_billing.models.payment_method import PaymentMethod, PaymentMethodStatus, PaymentMethodType
from agency_billing.models.mandate import Mandate, MandateStatus
from agency_billing.models.fallback_intent import FallbackIntent, FallbackIntentStatus
from agency_billing.models.batch import BatchDirection, BatchItem, BatchItemStatus, BatchStatus, PresentmentBatch
from agency_billing.models.billing_event import BillingEvent
from agency_billing.models.adjustment import AdjustmentKind, AdjustmentMode, BillingAdjustment

__all__ = [
    "Base",
    "Subscription",
    "SubscriptionStatus",
    "BillingCycle",
    "CycleStatus",
    "Charge",
    "ChargeKind",
    "ChargeStatus",
    "ReconciliationStatus",
    "Attempt",
    "AttemptChannel",
    "AttemptStatus",
    "PaymentMethod",
    "PaymentMethodStatus",
    "PaymentMethodType",
    "Mandate",
    "MandateStatus",
    "FallbackIntent",
    "FallbackIntentStatus",
    "PresentmentBatch",
    "BatchItem",
    "BatchDirection",
    "BatchStatus",
    "BatchItemStatus",
    "BillingEvent",
    "AdjustmentKind",
    "AdjustmentMode",
    "BillingAdjustment",
]
