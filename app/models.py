from enum import StrEnum

from tortoise import fields
from tortoise.models import Model


class BookingStatus(StrEnum):
    PENDING = "pending"  # materialized after payment, awaiting provider
    CONFIRMED = "confirmed"  # payment settlement confirmed by the processor
    ACCEPTED = "accepted"  # provider engaged, slot held
    REJECTED = "rejected"  # provider declined
    CANCELLED = "cancelled"  # cancelled by client, provider or admin
    COMPLETED = "completed"  # rated and closed, immutable from here
    RESCHEDULE_REQUESTED = "reschedule_requested"  # awaiting provider decision


class PaymentStatus(StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class NotificationType(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CONFIRMATION = "confirmation"
    BOOKING_REQUEST = "booking_request"
    BOOKING_PAYMENT = "booking_payment"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_CANCELLED = "booking_cancelled"
    STREAM_STARTED = "stream_started"
    STREAM_ENDED = "stream_ended"
    RESCHEDULE_REQUEST = "reschedule_request"
    RESCHEDULE_ACCEPTED = "reschedule_accepted"
    RESCHEDULE_REJECTED = "reschedule_rejected"
    ITEM_RECEIVED = "item_received"
    NEW_MESSAGE = "new_message"


class TimestampedModel(Model):
    id = fields.UUIDField(primary_key=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:  # type: ignore
        abstract = True


class Booking(TimestampedModel):
    client_id = fields.UUIDField()
    client_name = fields.CharField(max_length=255, default="")

    provider_id = fields.UUIDField()
    provider_user_id = fields.UUIDField()  # denormalized snapshot from providers-ms
    provider_name = fields.CharField(max_length=255, default="")

    start_datetime = fields.DatetimeField()
    end_datetime = fields.DatetimeField()

    status = fields.CharEnumField(BookingStatus, default=BookingStatus.PENDING)
    reason = fields.TextField(null=True)  # last cancellation / reschedule reason
    reschedule_count = fields.IntField(default=0)

    price = fields.DecimalField(max_digits=12, decimal_places=2)  # before discount
    currency = fields.CharField(max_length=3, default="IDR")
    platform = fields.CharField(max_length=64)
    special_request = fields.TextField(null=True)

    # stream-access credentials handed over by the client
    stream_account_link = fields.CharField(max_length=512, null=True)
    stream_account_password = fields.CharField(max_length=255, null=True)
    stream_link = fields.CharField(max_length=512, null=True)

    items_received = fields.BooleanField(default=False)
    items_received_at = fields.DatetimeField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "bookings"
        ordering = ["-created_at"]


class AcceptedBooking(TimestampedModel):
    """Denormalized copy of an accepted slot, used for overlap checks."""

    booking = fields.OneToOneField(
        "models.Booking", related_name="accepted_slot", on_delete=fields.CASCADE
    )
    provider_id = fields.UUIDField(db_index=True)
    start_datetime = fields.DatetimeField()
    end_datetime = fields.DatetimeField()

    class Meta:  # type: ignore
        table = "accepted_bookings"


class Payment(TimestampedModel):
    booking = fields.OneToOneField(
        "models.Booking", related_name="payment", on_delete=fields.CASCADE
    )
    amount = fields.DecimalField(max_digits=12, decimal_places=2)  # price - discount
    currency = fields.CharField(max_length=3, default="IDR")
    status = fields.CharEnumField(PaymentStatus, default=PaymentStatus.PENDING)
    order_id = fields.CharField(max_length=64, unique=True)
    transaction_id = fields.CharField(max_length=128, unique=True, null=True)
    payment_method = fields.CharField(max_length=32, default="midtrans")
    payment_token = fields.CharField(max_length=255, null=True)
    gateway_response = fields.JSONField(null=True)
    refunded_amount = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    # refunded_amount is claimed when the refund is requested; refunded_at is
    # stamped once the processor accepts it
    refund_requested_at = fields.DatetimeField(null=True)
    refunded_at = fields.DatetimeField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "payments"


class PaymentStatusHistory(TimestampedModel):
    payment = fields.ForeignKeyField(
        "models.Payment", related_name="history", on_delete=fields.CASCADE
    )
    previous_status = fields.CharEnumField(PaymentStatus)
    new_status = fields.CharEnumField(PaymentStatus)
    notification = fields.JSONField(null=True)

    class Meta:  # type: ignore
        table = "payment_status_history"
        ordering = ["created_at"]


class Voucher(TimestampedModel):
    code = fields.CharField(max_length=64, unique=True)  # stored upper-case
    description = fields.TextField(null=True)
    discount_amount = fields.DecimalField(max_digits=12, decimal_places=2)
    total_quantity = fields.IntField()
    remaining_quantity = fields.IntField()
    is_active = fields.BooleanField(default=True)
    expires_at = fields.DatetimeField()

    class Meta:  # type: ignore
        table = "vouchers"
        ordering = ["-created_at"]


class VoucherUsage(TimestampedModel):
    voucher = fields.ForeignKeyField(
        "models.Voucher", related_name="usages", on_delete=fields.RESTRICT
    )
    booking = fields.ForeignKeyField(
        "models.Booking", related_name="voucher_usages", on_delete=fields.CASCADE
    )
    user_id = fields.UUIDField()
    discount_applied = fields.DecimalField(max_digits=12, decimal_places=2)
    original_price = fields.DecimalField(max_digits=12, decimal_places=2)
    final_price = fields.DecimalField(max_digits=12, decimal_places=2)

    class Meta:  # type: ignore
        table = "voucher_usage"
        unique_together = (("voucher", "booking"),)


class Notification(TimestampedModel):
    # exactly one of user_id / provider_id is set
    user_id = fields.UUIDField(null=True, db_index=True)
    provider_id = fields.UUIDField(null=True, db_index=True)
    type = fields.CharEnumField(NotificationType)
    message = fields.TextField()
    booking = fields.ForeignKeyField(
        "models.Booking",
        related_name="notifications",
        null=True,
        on_delete=fields.SET_NULL,
    )
    is_read = fields.BooleanField(default=False)

    class Meta:  # type: ignore
        table = "notifications"
        ordering = ["-created_at"]


class Conversation(TimestampedModel):
    client_id = fields.UUIDField()
    client_name = fields.CharField(max_length=255, default="")
    provider_id = fields.UUIDField()
    provider_user_id = fields.UUIDField()
    provider_name = fields.CharField(max_length=255, default="")
    last_message_at = fields.DatetimeField(null=True)

    class Meta:  # type: ignore
        table = "conversations"
        unique_together = (("client_id", "provider_id"),)
        ordering = ["-created_at"]


class Message(TimestampedModel):
    conversation = fields.ForeignKeyField(
        "models.Conversation", related_name="messages", on_delete=fields.CASCADE
    )
    sender_id = fields.UUIDField()
    content = fields.TextField()
    is_read = fields.BooleanField(default=False)

    class Meta:  # type: ignore
        table = "messages"
        ordering = ["created_at"]
