"""
Payment processor bridge.

The booking row only exists once the processor reports success: the intent
pre-allocates a booking id and embeds it in the order id
(`BOOKING_<booking hex>_<nonce>`), the client callback materializes the
booking under that id, and the server-pushed webhook resolves the booking
from the order id. Both inbound paths are safe to replay.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from loguru import logger
from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from app import settings
from app.crud import BookingCRUD
from app.errors import (
    BookingNotFound,
    GatewayUnavailable,
    InvalidRange,
    InvalidVoucher,
    NoOpenRefund,
    PaymentCallbackError,
)
from app.models import (
    Booking,
    NotificationType,
    Payment,
    PaymentStatus,
    PaymentStatusHistory,
    Voucher,
)
from app.schemas import (
    AppliedVoucher,
    BookingResponse,
    PaymentCreate,
    PaymentIntentResponse,
    PaymentMetadata,
    PaymentResult,
    PaymentWebhook,
)
from app.services.lifecycle import BookingLifecycleManager
from app.services.notifications import NotificationEmitter
from app.services.templates import RecipientRole
from app.services.vouchers import VoucherLedger, normalize_code

if TYPE_CHECKING:
    from app.deps import SnapClient

ORDER_PREFIX = "BOOKING"

SETTLED_STATUSES = {"settlement", "capture"}
PENDING_STATUSES = {"pending"}
FAILED_STATUSES = {"deny", "cancel", "expire", "failure"}


def new_order_id(booking_id: UUID) -> str:
    """Unique per attempt; a retry simply mints a new one."""
    return f"{ORDER_PREFIX}_{booking_id.hex}_{secrets.token_hex(4)}"


def booking_id_from_order(order_id: str) -> UUID | None:
    parts = order_id.split("_")
    if len(parts) != 3 or parts[0] != ORDER_PREFIX:
        return None
    try:
        return UUID(hex=parts[1])
    except ValueError:
        return None


def map_transaction_status(transaction_status: str) -> PaymentStatus | None:
    status = transaction_status.lower()
    if status in SETTLED_STATUSES:
        return PaymentStatus.SUCCESS
    if status in PENDING_STATUSES:
        return PaymentStatus.PENDING
    if status in FAILED_STATUSES:
        return PaymentStatus.FAILED
    return None


@dataclass(frozen=True)
class WebhookOutcome:
    booking_id: UUID
    payment_status: PaymentStatus | None
    payment_updated: bool
    booking_confirmed: bool


class PaymentGatewayAdapter:
    def __init__(
        self,
        snap: SnapClient,
        bookings: BookingCRUD,
        lifecycle: BookingLifecycleManager,
        ledger: VoucherLedger,
        emitter: NotificationEmitter,
    ) -> None:
        self._snap = snap
        self._bookings = bookings
        self._lifecycle = lifecycle
        self._ledger = ledger
        self._emitter = emitter

    # ------------------------------------------------------------------
    # intent
    # ------------------------------------------------------------------

    async def create_payment_intent(
        self,
        payload: PaymentCreate,
        unavailabilities: list[dict],
        now: datetime | None = None,
    ) -> PaymentIntentResponse:
        metadata = payload.metadata
        if metadata.start_time >= metadata.end_time:
            raise InvalidRange()
        await self._bookings.check_schedule(
            metadata.streamer_id, metadata.start_time, metadata.end_time, unavailabilities
        )

        voucher: AppliedVoucher | None = None
        code = metadata.voucher_code or (metadata.voucher.code if metadata.voucher else None)
        if code:
            validation = await self._ledger.validate(code, metadata.price, now=now)
            if not validation.is_valid or validation.voucher is None:
                raise InvalidVoucher(validation.error or "Invalid voucher")
            voucher = AppliedVoucher(
                id=validation.voucher.id,
                code=validation.voucher.code,
                discount_amount=validation.discount_amount,
            )

        booking_id = uuid4()
        order_id = new_order_id(booking_id)
        metadata = metadata.model_copy(
            update={"voucher": voucher, "booking_id": booking_id, "order_id": order_id}
        )
        final_price = metadata.expected_amount()
        metadata = metadata.model_copy(update={"final_price": final_price})
        if payload.amount != final_price:
            logger.info(
                "Client amount {} replaced by computed amount {} for order_id={}",
                payload.amount,
                final_price,
                order_id,
            )

        transaction = await self._snap.create_transaction(
            {
                "transaction_details": {
                    "order_id": order_id,
                    "gross_amount": int(final_price),
                },
                "customer_details": {
                    "first_name": payload.client_name,
                    "email": payload.client_email,
                    "phone": payload.client_phone or "",
                },
                "item_details": [
                    {
                        "id": str(metadata.streamer_id),
                        "price": int(final_price),
                        "quantity": 1,
                        "name": (payload.description or "Live stream booking")[:50],
                    }
                ],
                "credit_card": {"secure": True},
                "callbacks": {"finish": f"{settings.site_url}/client-bookings"},
            }
        )
        token = transaction.get("token")
        if not token:
            logger.error("Payment gateway returned no token: order_id={}", order_id)
            raise GatewayUnavailable("Payment gateway returned no token")

        logger.info(
            "Payment intent created: order_id={} amount={}", order_id, final_price
        )
        return PaymentIntentResponse(
            token=token,
            redirect_url=transaction.get("redirect_url"),
            order_id=order_id,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # client callback
    # ------------------------------------------------------------------

    async def _existing(self, transaction_id: str, booking_id: UUID) -> Booking | None:
        payment = await Payment.get_or_none(transaction_id=transaction_id)
        if payment is not None:
            return await Booking.get(id=payment.booking_id)
        return await Booking.get_or_none(id=booking_id)

    async def _applied_discount(
        self, applied: AppliedVoucher, price: Decimal, ids: dict
    ) -> Decimal:
        # the posted discount is ignored; the voucher row is authoritative
        voucher = await Voucher.get_or_none(id=applied.id)
        if voucher is None or voucher.code != normalize_code(applied.code):
            raise PaymentCallbackError(
                "voucher", f"voucher {applied.code!r} does not match a known voucher", **ids
            )
        return min(voucher.discount_amount, price)

    async def handle_callback(
        self,
        result: PaymentResult,
        metadata: PaymentMetadata,
        provider: dict,
    ) -> BookingResponse | None:
        """
        Materialize booking, voucher usage and payment for a settled payment.

        Returns None when the result is not a settlement (nothing to create).
        Replays of the same transaction return the booking created the first
        time. Any failure raises PaymentCallbackError naming the failed step.
        """
        if map_transaction_status(result.transaction_status) != PaymentStatus.SUCCESS:
            logger.info(
                "Payment callback ignored: order_id={} status={}",
                result.order_id,
                result.transaction_status,
            )
            return None

        transaction_id = result.transaction_id or result.order_id
        booking_id = metadata.booking_id or booking_id_from_order(result.order_id)
        if booking_id is None:
            raise PaymentCallbackError(
                "parse", "order id carries no booking reference", order_id=result.order_id
            )
        ids = {
            "booking_id": booking_id,
            "order_id": result.order_id,
            "transaction_id": transaction_id,
        }

        existing = await self._existing(transaction_id, booking_id)
        if existing is not None:
            logger.info("Payment callback replayed: {}", ids)
            return BookingResponse.model_validate(existing, from_attributes=True)

        step = "voucher"
        try:
            async with in_transaction():
                discount = Decimal(0)
                if metadata.voucher is not None:
                    discount = await self._applied_discount(metadata.voucher, metadata.price, ids)
                amount = metadata.price - discount
                if metadata.final_price is not None and metadata.final_price != amount:
                    raise PaymentCallbackError(
                        "amount",
                        f"final price {metadata.final_price} does not match {amount}",
                        **ids,
                    )

                step = "booking"
                booking = await self._lifecycle.materialize_paid_booking(
                    booking_id, metadata, provider
                )

                if metadata.voucher is not None:
                    step = "voucher"
                    usage = await self._ledger.track_usage(
                        voucher_id=metadata.voucher.id,
                        booking_id=booking.id,
                        user_id=metadata.user_id,
                        discount_applied=discount,
                        original_price=metadata.price,
                        final_price=amount,
                    )
                    if not usage.ok:
                        raise PaymentCallbackError(
                            step, usage.error or "voucher usage rejected", **ids
                        )

                step = "payment"
                await Payment.create(
                    booking_id=booking.id,
                    amount=amount,
                    status=PaymentStatus.SUCCESS,
                    order_id=result.order_id,
                    transaction_id=transaction_id,
                    payment_token=result.token,
                    gateway_response=result.model_dump(mode="json"),
                )
        except PaymentCallbackError as exc:
            logger.error("Payment callback failed: step={} reason={} {}", exc.step, exc.reason, ids)
            raise
        except IntegrityError as exc:
            # a concurrent replay got there first
            existing = await self._existing(transaction_id, booking_id)
            if existing is not None:
                logger.info("Payment callback lost race to replay: {}", ids)
                return BookingResponse.model_validate(existing, from_attributes=True)
            logger.exception("Payment callback failed: step={} {}", step, ids)
            raise PaymentCallbackError(step, str(exc), **ids) from exc
        except Exception as exc:
            logger.exception("Payment callback failed: step={} {}", step, ids)
            raise PaymentCallbackError(step, str(exc), **ids) from exc

        logger.info("Booking materialized after payment: {} amount={}", ids, amount)
        await self._emitter.notify_booking(
            booking, NotificationType.BOOKING_REQUEST, primary=RecipientRole.CLIENT
        )
        return BookingResponse.model_validate(booking, from_attributes=True)

    # ------------------------------------------------------------------
    # server webhook
    # ------------------------------------------------------------------

    async def handle_webhook(self, payload: PaymentWebhook) -> WebhookOutcome:
        """
        Apply a processor notification. At-least-once delivery is assumed:
        payment status only moves out of pending, and the booking only moves
        pending → confirmed, so replays are no-ops.
        """
        booking_id = booking_id_from_order(payload.order_id)
        if booking_id is None:
            raise BookingNotFound(payload.order_id)
        booking = await self._bookings.get(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)

        new_status = map_transaction_status(payload.transaction_status)
        if new_status is None:
            logger.info(
                "Webhook status not actionable: order_id={} status={}",
                payload.order_id,
                payload.transaction_status,
            )
            return WebhookOutcome(booking_id, None, False, False)

        payment_updated = await self._apply_payment_status(booking_id, new_status, payload)

        booking_confirmed = False
        if new_status == PaymentStatus.SUCCESS:
            booking_confirmed = await self._lifecycle.confirm_payment(booking) is not None

        logger.info(
            "Webhook processed: booking_id={} status={} payment_updated={} confirmed={}",
            booking_id,
            new_status,
            payment_updated,
            booking_confirmed,
        )
        return WebhookOutcome(booking_id, new_status, payment_updated, booking_confirmed)

    async def _apply_payment_status(
        self,
        booking_id: UUID,
        new_status: PaymentStatus,
        payload: PaymentWebhook,
    ) -> bool:
        payment = await Payment.get_or_none(booking_id=booking_id)
        if payment is None:
            logger.warning("Webhook for booking without payment: booking_id={}", booking_id)
            return False
        if payment.status != PaymentStatus.PENDING or new_status == PaymentStatus.PENDING:
            return False

        raw = payload.model_dump(mode="json")
        changes: dict[str, object] = {"status": new_status, "gateway_response": raw}
        if payload.transaction_id and not payment.transaction_id:
            changes["transaction_id"] = payload.transaction_id

        updated = await Payment.filter(id=payment.id, status=PaymentStatus.PENDING).update(
            **changes
        )
        if updated:
            await PaymentStatusHistory.create(
                payment_id=payment.id,
                previous_status=PaymentStatus.PENDING,
                new_status=new_status,
                notification=raw,
            )
        return bool(updated)

    async def get_payment(self, booking_id: UUID) -> Payment | None:
        return await Payment.get_or_none(booking_id=booking_id)

    async def retry_refund(self, booking_id: UUID) -> Payment:
        payment = await self.get_payment(booking_id)
        if payment is None:
            raise BookingNotFound(booking_id)
        if payment.refund_requested_at is None or payment.refunded_at is not None:
            raise NoOpenRefund()
        if not await self._lifecycle.retry_refund(booking_id):
            raise GatewayUnavailable("Refund was not accepted by the payment gateway")
        return await Payment.get(id=payment.id)
