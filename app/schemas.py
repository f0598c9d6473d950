from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.models import BookingStatus, NotificationType, PaymentStatus


def _require_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        raise ValueError("datetime must be timezone-aware (include UTC offset)")
    return v.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class BookingCreate(BaseModel):
    provider_id: UUID
    start_datetime: datetime
    end_datetime: datetime
    price: Decimal = Field(gt=0)
    platform: str = Field(min_length=1, max_length=64)
    special_request: str | None = Field(default=None, max_length=1000)
    stream_account_link: str | None = Field(default=None, max_length=512)
    stream_account_password: str | None = Field(default=None, max_length=255)

    @field_validator("start_datetime", "end_datetime", mode="after")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        return _require_utc(v)

    @model_validator(mode="after")
    def validate_time_range(self) -> BookingCreate:
        if self.end_datetime <= self.start_datetime:
            raise ValueError("end_datetime must be after start_datetime")
        return self


class BookingResponse(BaseModel):
    id: UUID
    client_id: UUID
    client_name: str
    provider_id: UUID
    provider_user_id: UUID
    provider_name: str
    start_datetime: datetime
    end_datetime: datetime
    status: BookingStatus
    reason: str | None
    reschedule_count: int
    price: Decimal
    currency: str
    platform: str
    special_request: str | None
    stream_link: str | None
    items_received: bool
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingSlot(BaseModel):
    """Minimal occupied slot: reveals no user identity."""

    start_datetime: datetime
    end_datetime: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingFilters(BaseModel):
    """Bind to a FastAPI route via Depends(BookingFilters)."""

    provider_id: UUID | None = None
    status: BookingStatus | None = None

    # Pagination
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)
    is_reschedule: bool = False


class CancellationResult(BaseModel):
    """Refund fields are only set for cancellations, not reschedule requests."""

    booking: BookingResponse
    refund_percent: int | None = None
    refund_amount: Decimal | None = None
    fee_amount: Decimal | None = None


class RejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class RescheduleDecision(BaseModel):
    accept: bool
    new_start_datetime: datetime | None = None
    new_end_datetime: datetime | None = None

    @field_validator("new_start_datetime", "new_end_datetime", mode="after")
    @classmethod
    def require_timezone(cls, v: datetime | None) -> datetime | None:
        return _require_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_new_range(self) -> RescheduleDecision:
        if (self.new_start_datetime is None) != (self.new_end_datetime is None):
            raise ValueError("new_start_datetime and new_end_datetime go together")
        if (
            self.new_start_datetime is not None
            and self.new_end_datetime is not None
            and self.new_end_datetime <= self.new_start_datetime
        ):
            raise ValueError("new_end_datetime must be after new_start_datetime")
        return self


class CompleteRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=2000)


class StreamStart(BaseModel):
    stream_link: str = Field(min_length=1, max_length=512)


# ---------------------------------------------------------------------------
# Payments, camelCase on the wire, matching the checkout client
# ---------------------------------------------------------------------------


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AppliedVoucher(CamelModel):
    id: UUID
    code: str
    discount_amount: Decimal = Field(ge=0)


class PaymentMetadata(CamelModel):
    streamer_id: UUID
    user_id: UUID
    start_time: datetime
    end_time: datetime
    platform: str = Field(min_length=1, max_length=64)
    price: Decimal = Field(gt=0)
    final_price: Decimal | None = None
    voucher: AppliedVoucher | None = None
    voucher_code: str | None = None
    first_name: str = ""
    last_name: str = ""
    special_request: str | None = None
    sub_acc_link: str | None = None
    sub_acc_pass: str | None = None
    # filled in by the server when the intent is created
    booking_id: UUID | None = None
    order_id: str | None = None

    @field_validator("start_time", "end_time", mode="after")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        return _require_utc(v)

    @property
    def client_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def expected_amount(self) -> Decimal:
        discount = self.voucher.discount_amount if self.voucher else Decimal(0)
        return self.price - min(discount, self.price)


class PaymentCreate(CamelModel):
    amount: Decimal = Field(gt=0)
    client_name: str
    client_email: str
    client_phone: str | None = None
    description: str = ""
    metadata: PaymentMetadata


class PaymentIntentResponse(CamelModel):
    token: str
    redirect_url: str | None = None
    order_id: str
    metadata: PaymentMetadata


class PaymentResult(BaseModel):
    """Snap result object posted back by the checkout client."""

    order_id: str
    transaction_id: str | None = None
    transaction_status: str
    gross_amount: str | None = None
    token: str | None = None

    model_config = ConfigDict(extra="allow")


class PaymentCallback(BaseModel):
    result: PaymentResult
    metadata: PaymentMetadata


class PaymentCallbackResult(BaseModel):
    success: bool
    booking: BookingResponse | None = None


class PaymentWebhook(BaseModel):
    transaction_status: str
    order_id: str
    transaction_id: str | None = None

    model_config = ConfigDict(extra="allow")


class PaymentResponse(BaseModel):
    id: UUID
    booking_id: UUID
    amount: Decimal
    currency: str
    status: PaymentStatus
    order_id: str
    transaction_id: str | None
    refunded_amount: Decimal
    refund_requested_at: datetime | None = None
    refunded_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Vouchers
# ---------------------------------------------------------------------------


class VoucherCreate(BaseModel):
    code: str = Field(min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    description: str | None = None
    discount_amount: Decimal = Field(gt=0)
    total_quantity: int = Field(ge=1)
    expires_at: datetime

    @field_validator("expires_at", mode="after")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        return _require_utc(v)


class VoucherResponse(BaseModel):
    id: UUID
    code: str
    description: str | None
    discount_amount: Decimal
    total_quantity: int
    remaining_quantity: int
    is_active: bool
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VoucherValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    booking_amount: Decimal = Field(gt=0)


class VoucherValidation(BaseModel):
    is_valid: bool
    voucher: VoucherResponse | None = None
    error: str | None = None
    discount_amount: Decimal | None = None


# ---------------------------------------------------------------------------
# Notifications & messaging
# ---------------------------------------------------------------------------


class NotificationResponse(BaseModel):
    id: UUID
    user_id: UUID | None
    provider_id: UUID | None
    type: NotificationType
    message: str
    booking_id: UUID | None
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConversationStart(BaseModel):
    provider_id: UUID


class ConversationResponse(BaseModel):
    id: UUID
    client_id: UUID
    client_name: str
    provider_id: UUID
    provider_user_id: UUID
    provider_name: str
    last_message_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MessageCreate(BaseModel):
    content: str = Field(min_length=1, max_length=4000)


class MessageResponse(BaseModel):
    id: UUID
    conversation_id: UUID
    sender_id: UUID
    content: str
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
