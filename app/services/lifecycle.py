"""
Booking lifecycle.

State graph:

    pending ──► confirmed ──► accepted ──► completed
       │            │            │  ▲
       │            │            ▼  │
       │            │    reschedule_requested
       ▼            ▼            │
    rejected / cancelled ◄───────┘

Every transition is a compare-and-update on the booking row, so two requests
racing on the same booking cannot both succeed. Notifications are sent only
after the transition has been committed and never undo it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from loguru import logger
from tortoise.transactions import in_transaction

from app.crud import BookingCRUD, to_utc
from app.errors import (
    BookingNotFound,
    InvalidRange,
    InvalidTransition,
    RatingStoreUnavailable,
    RescheduleLimitExceeded,
    RescheduleWindowClosed,
)
from app.models import Booking, BookingStatus, NotificationType, Payment, PaymentStatus
from app.policy import MAX_RESCHEDULES, RESCHEDULE_MIN_NOTICE, refund_tier
from app.schemas import (
    BookingCreate,
    BookingResponse,
    CancellationResult,
    CompleteRequest,
    PaymentMetadata,
    RescheduleDecision,
)
from app.services.notifications import NotificationEmitter
from app.services.templates import RecipientRole

if TYPE_CHECKING:
    from app.deps import CurrentUser, ProvidersClient, SnapClient

ACCEPTABLE = {BookingStatus.PENDING, BookingStatus.CONFIRMED}
REJECTABLE = {BookingStatus.PENDING, BookingStatus.CONFIRMED}
CANCELLABLE = {
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.ACCEPTED,
    BookingStatus.RESCHEDULE_REQUESTED,
}
RESCHEDULABLE = {BookingStatus.ACCEPTED}


def provider_display_name(provider: dict) -> str:
    return f"{provider.get('first_name', '')} {provider.get('last_name', '')}".strip()


def _response(booking: Booking) -> BookingResponse:
    return BookingResponse.model_validate(booking, from_attributes=True)


class BookingLifecycleManager:
    def __init__(
        self,
        bookings: BookingCRUD,
        emitter: NotificationEmitter,
        providers: ProvidersClient,
        snap: SnapClient,
    ) -> None:
        self._bookings = bookings
        self._emitter = emitter
        self._providers = providers
        self._snap = snap

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    async def get(self, booking_id: UUID) -> Booking:
        booking = await self._bookings.get(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    async def _stale(self, booking_id: UUID, target: BookingStatus) -> InvalidTransition:
        """Build the error for a compare-and-update that lost the race."""
        current = await self.get(booking_id)
        return InvalidTransition(current.status, target)

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    async def create_booking(
        self,
        payload: BookingCreate,
        client: CurrentUser,
        provider: dict,
        unavailabilities: list[dict],
    ) -> BookingResponse:
        if payload.start_datetime >= payload.end_datetime:
            raise InvalidRange()
        await self._bookings.check_schedule(
            payload.provider_id,
            payload.start_datetime,
            payload.end_datetime,
            unavailabilities,
        )
        booking = await self._bookings.create_booking(
            client_id=client.id,
            client_name=client.username,
            provider_id=payload.provider_id,
            provider_user_id=UUID(provider["user_id"]),
            provider_name=provider_display_name(provider),
            start_datetime=payload.start_datetime,
            end_datetime=payload.end_datetime,
            price=payload.price,
            platform=payload.platform,
            special_request=payload.special_request,
            stream_account_link=payload.stream_account_link,
            stream_account_password=payload.stream_account_password,
        )
        logger.info(
            "Booking requested: booking_id={} provider_id={}", booking.id, booking.provider_id
        )
        await self._emitter.notify_booking(
            booking, NotificationType.BOOKING_REQUEST, primary=RecipientRole.CLIENT
        )
        return _response(booking)

    async def materialize_paid_booking(
        self,
        booking_id: UUID,
        metadata: PaymentMetadata,
        provider: dict,
    ) -> Booking:
        """Create the booking for a settled payment. Notifications are the caller's job."""
        if metadata.start_time >= metadata.end_time:
            raise InvalidRange()
        return await self._bookings.create_booking(
            booking_id=booking_id,
            client_id=metadata.user_id,
            client_name=metadata.client_name,
            provider_id=metadata.streamer_id,
            provider_user_id=UUID(provider["user_id"]),
            provider_name=provider_display_name(provider),
            start_datetime=metadata.start_time,
            end_datetime=metadata.end_time,
            price=metadata.price,
            platform=metadata.platform,
            special_request=metadata.special_request,
            stream_account_link=metadata.sub_acc_link,
            stream_account_password=metadata.sub_acc_pass,
        )

    async def confirm_payment(self, booking: Booking) -> Booking | None:
        """pending → confirmed on settlement. None if it was already past pending."""
        confirmed = await self._bookings.transition(
            booking.id, {BookingStatus.PENDING}, BookingStatus.CONFIRMED
        )
        if confirmed is not None:
            await self._emitter.notify_booking(
                confirmed, NotificationType.BOOKING_PAYMENT, primary=RecipientRole.CLIENT
            )
        return confirmed

    # ------------------------------------------------------------------
    # provider decisions
    # ------------------------------------------------------------------

    async def accept_booking(self, booking_id: UUID) -> BookingResponse:
        booking = await self.get(booking_id)
        if booking.status not in ACCEPTABLE:
            raise InvalidTransition(booking.status, BookingStatus.ACCEPTED)

        accepted = await self._bookings.accept(booking, ACCEPTABLE)
        if accepted is None:
            raise await self._stale(booking_id, BookingStatus.ACCEPTED)

        logger.info("Booking accepted: booking_id={}", booking_id)
        await self._emitter.notify_booking(
            accepted, NotificationType.BOOKING_ACCEPTED, primary=RecipientRole.CLIENT
        )
        return _response(accepted)

    async def reject_booking(self, booking_id: UUID, reason: str | None) -> BookingResponse:
        booking = await self.get(booking_id)
        if booking.status not in REJECTABLE:
            raise InvalidTransition(booking.status, BookingStatus.REJECTED)

        rejected = await self._bookings.transition(
            booking_id, REJECTABLE, BookingStatus.REJECTED, reason=reason
        )
        if rejected is None:
            raise await self._stale(booking_id, BookingStatus.REJECTED)

        await self._refund(rejected, Decimal(100), reason or "Rejected by provider")
        logger.info("Booking rejected: booking_id={}", booking_id)
        await self._emitter.notify_booking(
            rejected, NotificationType.BOOKING_REJECTED, primary=RecipientRole.CLIENT
        )
        return _response(rejected)

    # ------------------------------------------------------------------
    # cancellation / reschedule
    # ------------------------------------------------------------------

    async def cancel_or_reschedule(
        self,
        booking_id: UUID,
        reason: str,
        is_reschedule: bool,
        actor: RecipientRole = RecipientRole.CLIENT,
        now: datetime | None = None,
    ) -> CancellationResult:
        now = now or datetime.now(timezone.utc)
        booking = await self.get(booking_id)
        counterparty = (
            RecipientRole.PROVIDER if actor is RecipientRole.CLIENT else RecipientRole.CLIENT
        )

        if is_reschedule:
            return await self._request_reschedule(booking, reason, counterparty, now)

        if booking.status not in CANCELLABLE:
            raise InvalidTransition(booking.status, BookingStatus.CANCELLED)

        payment = await Payment.get_or_none(booking_id=booking.id)
        paid = payment.amount if payment is not None else booking.price
        tier = refund_tier(paid, to_utc(booking.start_datetime), now)

        cancelled = await self._bookings.transition(
            booking_id, CANCELLABLE, BookingStatus.CANCELLED, reason=reason
        )
        if cancelled is None:
            raise await self._stale(booking_id, BookingStatus.CANCELLED)
        await self._bookings.release_slot(booking_id)

        await self._refund(cancelled, Decimal(tier.percent), reason)
        logger.info(
            "Booking cancelled: booking_id={} refund_percent={}", booking_id, tier.percent
        )
        await self._emitter.notify_booking(
            cancelled, NotificationType.BOOKING_CANCELLED, primary=counterparty
        )
        return CancellationResult(
            booking=_response(cancelled),
            refund_percent=tier.percent,
            refund_amount=tier.refund_amount,
            fee_amount=tier.fee_amount,
        )

    async def _request_reschedule(
        self,
        booking: Booking,
        reason: str,
        counterparty: RecipientRole,
        now: datetime,
    ) -> CancellationResult:
        if booking.reschedule_count >= MAX_RESCHEDULES:
            raise RescheduleLimitExceeded()
        if booking.status not in RESCHEDULABLE:
            raise InvalidTransition(booking.status, BookingStatus.RESCHEDULE_REQUESTED)
        if to_utc(booking.start_datetime) - now < RESCHEDULE_MIN_NOTICE:
            raise RescheduleWindowClosed()

        requested = await self._bookings.transition(
            booking.id,
            RESCHEDULABLE,
            BookingStatus.RESCHEDULE_REQUESTED,
            reason=reason,
            reschedule_count=booking.reschedule_count + 1,
        )
        if requested is None:
            raise await self._stale(booking.id, BookingStatus.RESCHEDULE_REQUESTED)

        logger.info("Reschedule requested: booking_id={}", booking.id)
        await self._emitter.notify_booking(
            requested, NotificationType.RESCHEDULE_REQUEST, primary=counterparty
        )
        return CancellationResult(booking=_response(requested))

    async def resolve_reschedule(
        self, booking_id: UUID, decision: RescheduleDecision
    ) -> BookingResponse:
        booking = await self.get(booking_id)
        if booking.status != BookingStatus.RESCHEDULE_REQUESTED:
            target = BookingStatus.ACCEPTED if decision.accept else BookingStatus.CANCELLED
            raise InvalidTransition(booking.status, target)

        if not decision.accept:
            cancelled = await self._bookings.transition(
                booking_id, {BookingStatus.RESCHEDULE_REQUESTED}, BookingStatus.CANCELLED
            )
            if cancelled is None:
                raise await self._stale(booking_id, BookingStatus.CANCELLED)
            await self._bookings.release_slot(booking_id)
            await self._refund(cancelled, Decimal(100), "Reschedule declined by provider")
            await self._emitter.notify_booking(
                cancelled, NotificationType.RESCHEDULE_REJECTED, primary=RecipientRole.CLIENT
            )
            return _response(cancelled)

        if decision.new_start_datetime is not None and decision.new_end_datetime is not None:
            resolved = await self._bookings.move_slot(
                booking, decision.new_start_datetime, decision.new_end_datetime
            )
        else:
            resolved = await self._bookings.transition(
                booking_id, {BookingStatus.RESCHEDULE_REQUESTED}, BookingStatus.ACCEPTED
            )
        if resolved is None:
            raise await self._stale(booking_id, BookingStatus.ACCEPTED)

        await self._emitter.notify_booking(
            resolved, NotificationType.RESCHEDULE_ACCEPTED, primary=RecipientRole.CLIENT
        )
        return _response(resolved)

    # ------------------------------------------------------------------
    # session
    # ------------------------------------------------------------------

    async def mark_items_received(self, booking_id: UUID) -> BookingResponse:
        booking = await self.get(booking_id)
        if booking.status != BookingStatus.ACCEPTED:
            raise InvalidTransition(booking.status, BookingStatus.ACCEPTED)
        if booking.items_received:
            return _response(booking)

        updated = await self._bookings.transition(
            booking_id,
            {BookingStatus.ACCEPTED},
            BookingStatus.ACCEPTED,
            items_received=True,
            items_received_at=datetime.now(timezone.utc),
        )
        if updated is None:
            raise await self._stale(booking_id, BookingStatus.ACCEPTED)
        await self._emitter.notify_booking(
            updated,
            NotificationType.ITEM_RECEIVED,
            primary=RecipientRole.CLIENT,
            counterparty=False,
        )
        return _response(updated)

    async def start_stream(self, booking_id: UUID, stream_link: str) -> BookingResponse:
        booking = await self.get(booking_id)
        if booking.status != BookingStatus.ACCEPTED:
            raise InvalidTransition(booking.status, BookingStatus.ACCEPTED)

        updated = await self._bookings.transition(
            booking_id, {BookingStatus.ACCEPTED}, BookingStatus.ACCEPTED, stream_link=stream_link
        )
        if updated is None:
            raise await self._stale(booking_id, BookingStatus.ACCEPTED)
        await self._emitter.notify_booking(
            updated,
            NotificationType.STREAM_STARTED,
            primary=RecipientRole.CLIENT,
            counterparty=False,
            stream_link=stream_link,
        )
        return _response(updated)

    async def end_stream(self, booking_id: UUID) -> BookingResponse:
        booking = await self.get(booking_id)
        if booking.status != BookingStatus.ACCEPTED or not booking.stream_link:
            raise InvalidTransition(booking.status, BookingStatus.ACCEPTED)

        updated = await self._bookings.transition(
            booking_id, {BookingStatus.ACCEPTED}, BookingStatus.ACCEPTED, stream_link=None
        )
        if updated is None:
            raise await self._stale(booking_id, BookingStatus.ACCEPTED)
        await self._emitter.notify_booking(
            updated,
            NotificationType.STREAM_ENDED,
            primary=RecipientRole.CLIENT,
            counterparty=False,
        )
        return _response(updated)

    async def complete_booking(
        self,
        booking_id: UUID,
        payload: CompleteRequest,
        caller: CurrentUser,
    ) -> BookingResponse:
        booking = await self.get(booking_id)
        if booking.status != BookingStatus.ACCEPTED:
            raise InvalidTransition(booking.status, BookingStatus.COMPLETED)

        # the completion commits only once the rating is stored; the booking row
        # stays locked meanwhile, so a racing cancel either wins before the
        # rating is sent or waits for this transaction
        async with in_transaction():
            completed = await self._bookings.transition(
                booking_id, {BookingStatus.ACCEPTED}, BookingStatus.COMPLETED, stream_link=None
            )
            if completed is None:
                raise await self._stale(booking_id, BookingStatus.COMPLETED)

            recorded = await self._providers.submit_rating(
                booking.provider_id,
                rating=payload.rating,
                comment=payload.comment,
                client_name=booking.client_name,
                booking_id=booking.id,
                user=caller,
            )
            if not recorded:
                raise RatingStoreUnavailable()
        logger.info("Booking completed: booking_id={} rating={}", booking_id, payload.rating)
        return _response(completed)

    # ------------------------------------------------------------------
    # refunds
    # ------------------------------------------------------------------

    async def _refund(self, booking: Booking, percent: Decimal, reason: str) -> Decimal:
        """
        Claim and request a refund of `percent` of the settled payment.

        The claim is a conditional update on `refund_requested_at`, so a payment
        is only ever owed one refund. A request the processor does not accept
        leaves the claim open for `retry_refund`; it never blocks the transition.
        Returns the amount the processor accepted.
        """
        payment = await Payment.get_or_none(booking_id=booking.id)
        if payment is None or payment.status != PaymentStatus.SUCCESS or percent <= 0:
            return Decimal(0)

        amount = (payment.amount * percent / 100).quantize(Decimal("0.01"))
        claimed = await Payment.filter(
            id=payment.id, refund_requested_at__isnull=True
        ).update(refunded_amount=amount, refund_requested_at=datetime.now(timezone.utc))
        if not claimed:
            return Decimal(0)

        payment.refunded_amount = amount
        return await self._request_refund(payment, reason)

    async def retry_refund(self, booking_id: UUID) -> Decimal:
        """Re-send a claimed refund the processor has not accepted yet."""
        payment = await Payment.get_or_none(
            booking_id=booking_id,
            refund_requested_at__isnull=False,
            refunded_at__isnull=True,
        )
        if payment is None:
            return Decimal(0)
        return await self._request_refund(payment, "Refund retry")

    async def _request_refund(self, payment: Payment, reason: str) -> Decimal:
        if not await self._snap.refund(payment.order_id, payment.refunded_amount, reason):
            logger.warning(
                "Refund request failed, left open for retry: booking_id={} order_id={} amount={}",
                payment.booking_id,
                payment.order_id,
                payment.refunded_amount,
            )
            return Decimal(0)

        await Payment.filter(id=payment.id, refunded_at__isnull=True).update(
            refunded_at=datetime.now(timezone.utc)
        )
        logger.info(
            "Refund accepted: booking_id={} order_id={} amount={}",
            payment.booking_id,
            payment.order_id,
            payment.refunded_amount,
        )
        return payment.refunded_amount
