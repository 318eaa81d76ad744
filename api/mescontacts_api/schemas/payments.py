from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

PaymentMethod = Literal["CASH", "E_TRANSFER", "BANK_TRANSFER", "CARD", "OTHER"]
PaymentStatus = Literal["PENDING", "COMPLETED", "REFUNDED"]


class PaymentRecordRequest(BaseModel):
    post_id: str
    amount: Decimal = Field(description="Amount in currency units, e.g. 49.99")
    method: PaymentMethod
    duration_days: int
    auto_publish: bool = True
    paid_at: datetime | None = None
    notes: str | None = None
    external_reference: str | None = None


class PendingPaymentRequest(BaseModel):
    post_id: str
    amount: Decimal
    method: PaymentMethod
    duration_days: int
    notes: str | None = None
    external_reference: str | None = None


class RenewRequest(BaseModel):
    amount: Decimal
    method: PaymentMethod
    duration_days: int
    paid_at: datetime | None = None
    notes: str | None = None
    external_reference: str | None = None


class ConfirmPaymentRequest(BaseModel):
    paid_at: datetime | None = None


class RefundRequest(BaseModel):
    notes: str | None = None


class PaymentNotesPatchRequest(BaseModel):
    notes: str


class PaymentOut(BaseModel):
    id: str
    post_id: str
    amount_cents: int
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    duration_days: int
    auto_publish: bool
    paid_at: datetime | None = None
    notes: str | None = None
    external_reference: str | None = None
    recorded_by: str | None = None
    created_at: datetime


class PaymentStatsOut(BaseModel):
    total_count: int
    completed_count: int
    pending_count: int
    refunded_count: int
    total_revenue_cents: int
    pending_amount_cents: int
    refunded_amount_cents: int
    by_method: dict[str, int] = Field(default_factory=dict)
