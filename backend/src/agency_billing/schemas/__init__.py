"""Pydantic schemas for API request/response validation."""

from agency_billing.schemas.adjustment import Adjustment, AdjustmentCreate, AdjustmentUpdate
from agency_billing.schemas.batch import Batch, ImportSummary, PresentmentBatchCreate
from agency_billing.schemas.error import ErrorCode, ErrorDetail, ErrorResponse
from agency_billing.schemas.fallback import FallbackIntent, FallbackIntentCreate
from agency_billing.schemas.mandate import (
    DirectDebitMandateCreate,
    DirectDebitMandateResponse,
    MandateStatusUpdate,
    MandateView,
    PaymentMethodView,
)
from agency_billing.schemas.overview import SubscriptionOverview

__all__ = [
    "Adjustment",
    "AdjustmentCreate",
    "AdjustmentUpdate",
    "Batch",
    "ImportSummary",
    "PresentmentBatchCreate",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "FallbackIntent",
    "FallbackIntentCreate",
    "DirectDebitMandateCreate",
    "DirectDebitMandateResponse",
    "MandateStatusUpdate",
    "MandateView",
    "PaymentMethodView",
    "SubscriptionOverview",
]
