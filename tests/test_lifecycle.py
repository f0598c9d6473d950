"""BookingLifecycleManager against in-memory sqlite, collaborators mocked."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from app.crud import BookingCRUD, lock_provider_schedule, schedule_lock_key
from app.errors import (
    InvalidRange,
    InvalidTransition,
    NotificationError,
    RatingStoreUnavailable,
    RescheduleLimitExceeded,
    RescheduleWindowClosed,
    ScheduleConflict,
)
from app.models import (
    AcceptedBooking,
    Booking,
    BookingStatus,
    Notification,
    NotificationType,
    Payment,
    PaymentStatus,
)
from app.schemas import BookingCreate, CompleteRequest, RescheduleDecision
from app.services.lifecycle import BookingLifecycleManager
from app.services.templates import RecipientRole

from .factories import (
    CLIENT_ID,
    PROVIDER_ID,
    create_booking_row,
    make_client,
    provider_dict,
)


@pytest.fixture()
def manager(emitter, providers, snap) -> BookingLifecycleManager:
    return BookingLifecycleManager(BookingCRUD(), emitter, providers, snap)


def _future(hours: float) -> datetime:
    return datetime.now(UTC) + timedelta(hours=hours)


async def _paid_booking(amount: str = "80000", **overrides) -> Booking:
    booking = await create_booking_row(**overrides)
    await Payment.create(
        booking_id=booking.id,
        amount=Decimal(amount),
        status=PaymentStatus.SUCCESS,
        order_id=f"BOOKING_{booking.id.hex}_0000beef",
        transaction_id=f"txn-{booking.id.hex[:8]}",
    )
    return booking


class TestCreateBooking:
    def _payload(self, start: datetime, end: datetime) -> BookingCreate:
        return BookingCreate.model_construct(
            provider_id=PROVIDER_ID,
            start_datetime=start,
            end_datetime=end,
            price=Decimal("100000"),
            platform="tiktok",
            special_request=None,
            stream_account_link=None,
            stream_account_password=None,
        )

    async def test_creates_pending_and_notifies_both(self, db, manager):
        start = _future(48)
        booking = await manager.create_booking(
            self._payload(start, start + timedelta(hours=2)), make_client(), provider_dict(), []
        )
        assert booking.status == BookingStatus.PENDING
        notes = await Notification.filter(booking_id=booking.id)
        assert {(n.user_id, n.provider_id) for n in notes} == {
            (CLIENT_ID, None),
            (None, PROVIDER_ID),
        }

    async def test_equal_range_rejected(self, db, manager):
        start = _future(48)
        with pytest.raises(InvalidRange):
            await manager.create_booking(
                self._payload(start, start), make_client(), provider_dict(), []
            )
        assert await Booking.all().count() == 0

    async def test_overlap_with_accepted_booking_conflicts(self, db, manager):
        start = _future(48)
        existing = await create_booking_row(
            start_datetime=start, end_datetime=start + timedelta(hours=2)
        )
        await manager.accept_booking(existing.id)
        with pytest.raises(ScheduleConflict):
            await manager.create_booking(
                self._payload(start + timedelta(hours=1), start + timedelta(hours=3)),
                make_client(),
                provider_dict(),
                [],
            )

    async def test_adjacent_window_is_free(self, db, manager):
        start = _future(48)
        existing = await create_booking_row(
            start_datetime=start, end_datetime=start + timedelta(hours=2)
        )
        await manager.accept_booking(existing.id)
        booking = await manager.create_booking(
            self._payload(start + timedelta(hours=2), start + timedelta(hours=3)),
            make_client(),
            provider_dict(),
            [],
        )
        assert booking.status == BookingStatus.PENDING

    async def test_unavailability_window_conflicts(self, db, manager):
        start = _future(48)
        blocked = [
            {
                "start_datetime": start.isoformat(),
                "end_datetime": (start + timedelta(hours=8)).isoformat(),
            }
        ]
        with pytest.raises(ScheduleConflict):
            await manager.create_booking(
                self._payload(start + timedelta(hours=1), start + timedelta(hours=2)),
                make_client(),
                provider_dict(),
                blocked,
            )


class TestAccept:
    async def test_accept_materializes_slot(self, db, manager):
        booking = await create_booking_row()
        accepted = await manager.accept_booking(booking.id)
        assert accepted.status == BookingStatus.ACCEPTED
        assert await AcceptedBooking.filter(booking_id=booking.id).exists()

    async def test_accept_from_confirmed(self, db, manager):
        booking = await create_booking_row(status=BookingStatus.CONFIRMED)
        accepted = await manager.accept_booking(booking.id)
        assert accepted.status == BookingStatus.ACCEPTED

    async def test_accept_twice_is_invalid(self, db, manager):
        booking = await create_booking_row()
        await manager.accept_booking(booking.id)
        with pytest.raises(InvalidTransition):
            await manager.accept_booking(booking.id)

    async def test_overlapping_accepts_only_one_wins(self, db, manager):
        start = _future(48)
        first = await create_booking_row(
            start_datetime=start, end_datetime=start + timedelta(hours=2)
        )
        second = await create_booking_row(
            start_datetime=start + timedelta(minutes=30), end_datetime=start + timedelta(hours=1)
        )
        await manager.accept_booking(first.id)
        with pytest.raises(ScheduleConflict):
            await manager.accept_booking(second.id)
        await second.refresh_from_db()
        assert second.status == BookingStatus.PENDING

    async def test_accept_locks_provider_schedule_before_checking(self, db, manager):
        booking = await create_booking_row()
        with patch("app.crud.lock_provider_schedule", AsyncMock()) as lock:
            await manager.accept_booking(booking.id)
        lock.assert_awaited_once()
        assert lock.await_args.args[1] == PROVIDER_ID


class TestProviderScheduleLock:
    def _connection(self, dialect: str) -> MagicMock:
        connection = MagicMock()
        connection.capabilities.dialect = dialect
        connection.execute_query = AsyncMock()
        return connection

    async def test_postgres_takes_advisory_lock(self):
        connection = self._connection("postgres")
        await lock_provider_schedule(connection, PROVIDER_ID)
        connection.execute_query.assert_awaited_once_with(
            "SELECT pg_advisory_xact_lock($1)", [schedule_lock_key(PROVIDER_ID)]
        )

    async def test_sqlite_needs_no_lock(self):
        connection = self._connection("sqlite")
        await lock_provider_schedule(connection, PROVIDER_ID)
        connection.execute_query.assert_not_awaited()

    def test_key_is_stable_per_provider_and_fits_bigint(self):
        other = uuid4()
        assert schedule_lock_key(PROVIDER_ID) == schedule_lock_key(PROVIDER_ID)
        assert schedule_lock_key(PROVIDER_ID) != schedule_lock_key(other)
        assert -(2**63) <= schedule_lock_key(other) < 2**63


class TestCancel:
    @pytest.mark.parametrize(
        ("notice", "percent", "refund"),
        [
            (timedelta(hours=24), 100, Decimal("80000.00")),
            (timedelta(hours=23, minutes=59), 50, Decimal("40000.00")),
            (timedelta(hours=3), 50, Decimal("40000.00")),
            (timedelta(hours=2, minutes=59), 0, Decimal("0.00")),
        ],
    )
    async def test_refund_tiers(self, db, manager, snap, notice, percent, refund):
        start = _future(72)
        booking = await _paid_booking(start_datetime=start, end_datetime=start + timedelta(hours=1))
        result = await manager.cancel_or_reschedule(
            booking.id, "Change of plans", is_reschedule=False, now=start - notice
        )
        assert result.booking.status == BookingStatus.CANCELLED
        assert result.refund_percent == percent
        assert result.refund_amount == refund
        payment = await Payment.get(booking_id=booking.id)
        assert payment.refunded_amount == refund
        if percent:
            snap.refund.assert_awaited_once()
        else:
            snap.refund.assert_not_awaited()

    async def test_client_cancel_notifies_provider_first_with_reason(self, db, manager):
        booking = await create_booking_row()
        await manager.cancel_or_reschedule(booking.id, "Sick", is_reschedule=False)
        notes = await Notification.filter(
            booking_id=booking.id, type=NotificationType.BOOKING_CANCELLED
        ).order_by("created_at")
        assert len(notes) == 2
        assert any(n.provider_id == PROVIDER_ID and "Sick" in n.message for n in notes)

    async def test_cancel_releases_slot(self, db, manager):
        booking = await create_booking_row()
        await manager.accept_booking(booking.id)
        await manager.cancel_or_reschedule(booking.id, "Sick", is_reschedule=False)
        assert not await AcceptedBooking.filter(booking_id=booking.id).exists()

    async def test_cancel_completed_is_invalid(self, db, manager):
        booking = await create_booking_row(status=BookingStatus.COMPLETED)
        with pytest.raises(InvalidTransition):
            await manager.cancel_or_reschedule(booking.id, "Late", is_reschedule=False)

    async def test_refund_recorded_only_once(self, db, manager, snap):
        booking = await _paid_booking()
        await manager.reject_booking(booking.id, "Fully booked")
        payment = await Payment.get(booking_id=booking.id)
        assert payment.refunded_amount == Decimal("80000.00")
        assert await manager._refund(booking, Decimal(100), "again") == Decimal(0)
        snap.refund.assert_awaited_once()

    async def test_failed_refund_stays_open_for_retry(self, db, manager, snap):
        booking = await _paid_booking()
        snap.refund.return_value = False
        rejected = await manager.reject_booking(booking.id, "Fully booked")

        assert rejected.status == BookingStatus.REJECTED
        payment = await Payment.get(booking_id=booking.id)
        assert payment.refunded_amount == Decimal("80000.00")
        assert payment.refund_requested_at is not None
        assert payment.refunded_at is None

        snap.refund.return_value = True
        assert await manager.retry_refund(booking.id) == Decimal("80000.00")
        payment = await Payment.get(booking_id=booking.id)
        assert payment.refunded_at is not None
        assert snap.refund.await_count == 2
        assert snap.refund.await_args.args[:2] == (payment.order_id, Decimal("80000.00"))

        assert await manager.retry_refund(booking.id) == Decimal(0)
        assert snap.refund.await_count == 2


class TestReschedule:
    async def test_request_then_second_request_rejected(self, db, manager):
        start = _future(72)
        booking = await create_booking_row(
            status=BookingStatus.ACCEPTED,
            start_datetime=start,
            end_datetime=start + timedelta(hours=1),
        )
        result = await manager.cancel_or_reschedule(booking.id, "Clash", is_reschedule=True)
        assert result.booking.status == BookingStatus.RESCHEDULE_REQUESTED
        assert result.refund_percent is None

        await manager.resolve_reschedule(booking.id, RescheduleDecision(accept=True))
        with pytest.raises(RescheduleLimitExceeded):
            await manager.cancel_or_reschedule(booking.id, "Again", is_reschedule=True)

    async def test_window_closes_six_hours_before_start(self, db, manager):
        start = _future(72)
        booking = await create_booking_row(
            status=BookingStatus.ACCEPTED,
            start_datetime=start,
            end_datetime=start + timedelta(hours=1),
        )
        with pytest.raises(RescheduleWindowClosed):
            await manager.cancel_or_reschedule(
                booking.id,
                "Clash",
                is_reschedule=True,
                now=start - timedelta(hours=5, minutes=59),
            )
        result = await manager.cancel_or_reschedule(
            booking.id, "Clash", is_reschedule=True, now=start - timedelta(hours=6)
        )
        assert result.booking.status == BookingStatus.RESCHEDULE_REQUESTED

    async def test_provider_request_notifies_both_parties(self, db, manager):
        start = _future(72)
        booking = await create_booking_row(
            status=BookingStatus.ACCEPTED,
            start_datetime=start,
            end_datetime=start + timedelta(hours=1),
        )
        await manager.cancel_or_reschedule(
            booking.id, "Clash", is_reschedule=True, actor=RecipientRole.PROVIDER
        )
        notes = await Notification.filter(
            booking_id=booking.id, type=NotificationType.RESCHEDULE_REQUEST
        )
        assert len(notes) == 2
        assert {n.user_id for n in notes if n.user_id} == {CLIENT_ID}
        assert {n.provider_id for n in notes if n.provider_id} == {PROVIDER_ID}

    async def test_accept_with_new_window_moves_slot(self, db, manager):
        start = _future(72)
        booking = await create_booking_row(
            start_datetime=start, end_datetime=start + timedelta(hours=1)
        )
        await manager.accept_booking(booking.id)
        await manager.cancel_or_reschedule(booking.id, "Clash", is_reschedule=True)

        new_start = _future(96)
        resolved = await manager.resolve_reschedule(
            booking.id,
            RescheduleDecision(
                accept=True,
                new_start_datetime=new_start,
                new_end_datetime=new_start + timedelta(hours=2),
            ),
        )
        assert resolved.status == BookingStatus.ACCEPTED
        slot = await AcceptedBooking.get(booking_id=booking.id)
        assert slot.start_datetime == new_start

    async def test_declined_reschedule_cancels_with_full_refund(self, db, manager):
        booking = await _paid_booking(status=BookingStatus.RESCHEDULE_REQUESTED)
        resolved = await manager.resolve_reschedule(booking.id, RescheduleDecision(accept=False))
        assert resolved.status == BookingStatus.CANCELLED
        payment = await Payment.get(booking_id=booking.id)
        assert payment.refunded_amount == Decimal("80000.00")


class TestSessionAndCompletion:
    async def test_stream_start_notifies_client_with_link(self, db, manager):
        booking = await create_booking_row(status=BookingStatus.ACCEPTED)
        await manager.start_stream(booking.id, "https://live.example/s")
        note = await Notification.get(booking_id=booking.id, type=NotificationType.STREAM_STARTED)
        assert note.user_id == CLIENT_ID
        assert note.message.endswith("Join here: https://live.example/s")

    async def test_end_stream_without_start_is_invalid(self, db, manager):
        booking = await create_booking_row(status=BookingStatus.ACCEPTED)
        with pytest.raises(InvalidTransition):
            await manager.end_stream(booking.id)

    async def test_items_received_sets_flag(self, db, manager):
        booking = await create_booking_row(status=BookingStatus.ACCEPTED)
        updated = await manager.mark_items_received(booking.id)
        assert updated.items_received is True

    async def test_complete_records_rating_first(self, db, manager, providers):
        booking = await create_booking_row(status=BookingStatus.ACCEPTED)
        completed = await manager.complete_booking(
            booking.id, CompleteRequest(rating=5, comment="Great"), make_client()
        )
        assert completed.status == BookingStatus.COMPLETED
        providers.submit_rating.assert_awaited_once()
        with pytest.raises(InvalidTransition):
            await manager.complete_booking(booking.id, CompleteRequest(rating=5), make_client())

    async def test_complete_requires_accepted(self, db, manager):
        booking = await create_booking_row(status=BookingStatus.PENDING)
        with pytest.raises(InvalidTransition):
            await manager.complete_booking(booking.id, CompleteRequest(rating=4), make_client())

    async def test_rating_store_failure_leaves_booking_untouched(self, db, manager, providers):
        providers.submit_rating = AsyncMock(return_value=False)
        booking = await create_booking_row(status=BookingStatus.ACCEPTED)
        with pytest.raises(RatingStoreUnavailable):
            await manager.complete_booking(booking.id, CompleteRequest(rating=3), make_client())
        await booking.refresh_from_db()
        assert booking.status == BookingStatus.ACCEPTED

    async def test_rating_not_sent_when_cancel_wins(self, db, manager, providers):
        booking = await create_booking_row(status=BookingStatus.ACCEPTED)
        transition = manager._bookings.transition

        async def cancelled_underneath(*args, **kwargs):
            await Booking.filter(id=booking.id).update(status=BookingStatus.CANCELLED)
            return await transition(*args, **kwargs)

        manager._bookings.transition = cancelled_underneath
        with pytest.raises(InvalidTransition):
            await manager.complete_booking(booking.id, CompleteRequest(rating=5), make_client())
        providers.submit_rating.assert_not_awaited()


class TestNotificationFailure:
    async def test_transition_survives_notification_failure(self, db, manager, emitter):
        emitter.emit = AsyncMock(side_effect=NotificationError("insert failed"))
        booking = await create_booking_row()
        accepted = await manager.accept_booking(booking.id)
        assert accepted.status == BookingStatus.ACCEPTED
        assert await Notification.all().count() == 0
