from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from tortoise.transactions import in_transaction

from app.errors import ScheduleConflict
from app.models import AcceptedBooking, Booking, BookingStatus
from app.schemas import BookingFilters, BookingResponse, BookingSlot


def to_utc(dt: datetime) -> datetime:
    """Ensure a datetime is UTC-aware, handling both aware and naive inputs."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _overlaps_unavailabilities(
    start: datetime,
    end: datetime,
    unavailabilities: list[dict],
) -> bool:
    """Return True if [start, end) overlaps any unavailability window."""
    for u in unavailabilities:
        u_start = to_utc(datetime.fromisoformat(u["start_datetime"]))
        u_end = to_utc(datetime.fromisoformat(u["end_datetime"]))
        if start < u_end and end > u_start:
            return True
    return False


def schedule_lock_key(provider_id: UUID) -> int:
    """Signed 64-bit advisory lock key for a provider's schedule."""
    return int.from_bytes(provider_id.bytes[:8], "big", signed=True)


async def lock_provider_schedule(connection, provider_id: UUID) -> None:
    """
    Serialize slot writes for one provider until the surrounding transaction
    ends. Row locks cannot cover a slot that does not exist yet, so postgres
    takes a transaction-scoped advisory lock; sqlite already runs one writer
    at a time.
    """
    if connection.capabilities.dialect == "postgres":
        await connection.execute_query(
            "SELECT pg_advisory_xact_lock($1)", [schedule_lock_key(provider_id)]
        )


class BookingCRUD:
    async def has_accepted_conflict(
        self,
        provider_id: UUID,
        start: datetime,
        end: datetime,
        exclude_booking_id: UUID | None = None,
        lock: bool = False,
    ) -> bool:
        """Return True if an accepted slot of the provider overlaps [start, end)."""
        qs = AcceptedBooking.filter(
            provider_id=provider_id,
            start_datetime__lt=end,
            end_datetime__gt=start,
        )
        if exclude_booking_id is not None:
            qs = qs.exclude(booking_id=exclude_booking_id)
        if lock:
            qs = qs.select_for_update()
        return await qs.exists()

    async def check_schedule(
        self,
        provider_id: UUID,
        start: datetime,
        end: datetime,
        unavailabilities: list[dict],
    ) -> None:
        """Raise ScheduleConflict if the window is blocked or already taken."""
        if _overlaps_unavailabilities(start, end, unavailabilities):
            raise ScheduleConflict(
                "Booking overlaps with a provider unavailability period"
            )
        if await self.has_accepted_conflict(provider_id, start, end):
            raise ScheduleConflict()

    async def create_booking(
        self,
        *,
        client_id: UUID,
        client_name: str,
        provider_id: UUID,
        provider_user_id: UUID,
        provider_name: str,
        start_datetime: datetime,
        end_datetime: datetime,
        price: Decimal,
        platform: str,
        special_request: str | None = None,
        stream_account_link: str | None = None,
        stream_account_password: str | None = None,
        booking_id: UUID | None = None,
    ) -> Booking:
        extra = {"id": booking_id} if booking_id is not None else {}
        return await Booking.create(
            **extra,
            client_id=client_id,
            client_name=client_name,
            provider_id=provider_id,
            provider_user_id=provider_user_id,
            provider_name=provider_name,
            start_datetime=start_datetime,
            end_datetime=end_datetime,
            price=price,
            platform=platform,
            special_request=special_request,
            stream_account_link=stream_account_link,
            stream_account_password=stream_account_password,
            status=BookingStatus.PENDING,
        )

    async def get(self, booking_id: UUID) -> Booking | None:
        return await Booking.get_or_none(id=booking_id)

    async def get_booking(
        self,
        booking_id: UUID,
        client_id: UUID | None = None,
        provider_user_id: UUID | None = None,
    ) -> BookingResponse | None:
        if client_id is not None:
            inst = await Booking.get_or_none(id=booking_id, client_id=client_id)
        elif provider_user_id is not None:
            inst = await Booking.get_or_none(
                id=booking_id, provider_user_id=provider_user_id
            )
        else:
            inst = await Booking.get_or_none(id=booking_id)

        if not inst:
            return None
        return BookingResponse.model_validate(inst, from_attributes=True)

    async def list_bookings(
        self,
        filters: BookingFilters,
        client_id: UUID | None = None,
        provider_user_id: UUID | None = None,
    ) -> list[BookingResponse]:
        qs = Booking.all()

        if client_id is not None:
            qs = qs.filter(client_id=client_id)
        if provider_user_id is not None:
            qs = qs.filter(provider_user_id=provider_user_id)
        if filters.provider_id is not None:
            qs = qs.filter(provider_id=filters.provider_id)
        if filters.status is not None:
            qs = qs.filter(status=filters.status)

        offset = (filters.page - 1) * filters.page_size
        qs = qs.offset(offset).limit(filters.page_size)

        bookings = await qs
        return [
            BookingResponse.model_validate(b, from_attributes=True) for b in bookings
        ]

    async def transition(
        self,
        booking_id: UUID,
        from_statuses: set[BookingStatus],
        to_status: BookingStatus,
        **changes,
    ) -> Booking | None:
        """
        Compare-and-update: move the booking to `to_status` only if its current
        status is one of `from_statuses`. Returns the refreshed booking, or None
        if the row did not match (missing or status changed underneath us).
        """
        updated = await Booking.filter(
            id=booking_id, status__in=list(from_statuses)
        ).update(status=to_status, updated_at=datetime.now(timezone.utc), **changes)
        if not updated:
            return None
        return await Booking.get(id=booking_id)

    async def accept(self, booking: Booking, from_statuses: set[BookingStatus]) -> Booking | None:
        """
        Atomic accept: lock the provider's schedule, flip the status and
        materialize the AcceptedBooking row in one transaction.
        """
        async with in_transaction() as connection:
            await lock_provider_schedule(connection, booking.provider_id)
            if await self.has_accepted_conflict(
                booking.provider_id,
                booking.start_datetime,
                booking.end_datetime,
                exclude_booking_id=booking.id,
                lock=True,
            ):
                raise ScheduleConflict(
                    "Booking conflicts with another accepted booking for this provider"
                )
            accepted = await self.transition(
                booking.id, from_statuses, BookingStatus.ACCEPTED
            )
            if accepted is None:
                return None
            await AcceptedBooking.create(
                booking_id=accepted.id,
                provider_id=accepted.provider_id,
                start_datetime=accepted.start_datetime,
                end_datetime=accepted.end_datetime,
            )
        return accepted

    async def move_slot(
        self,
        booking: Booking,
        start: datetime,
        end: datetime,
    ) -> Booking | None:
        """Resolve a reschedule onto a new window, keeping the slot copy in sync."""
        async with in_transaction() as connection:
            await lock_provider_schedule(connection, booking.provider_id)
            if await self.has_accepted_conflict(
                booking.provider_id, start, end, exclude_booking_id=booking.id, lock=True
            ):
                raise ScheduleConflict(
                    "New time conflicts with another accepted booking for this provider"
                )
            moved = await self.transition(
                booking.id,
                {BookingStatus.RESCHEDULE_REQUESTED},
                BookingStatus.ACCEPTED,
                start_datetime=start,
                end_datetime=end,
            )
            if moved is None:
                return None
            await AcceptedBooking.filter(booking_id=booking.id).update(
                start_datetime=start, end_datetime=end
            )
        return moved

    async def release_slot(self, booking_id: UUID) -> None:
        await AcceptedBooking.filter(booking_id=booking_id).delete()

    async def list_occupied_slots(self, provider_id: UUID) -> list[BookingSlot]:
        """Return accepted time windows for a provider: no user info exposed."""
        slots = await AcceptedBooking.filter(provider_id=provider_id).order_by(
            "start_datetime"
        )
        return [BookingSlot.model_validate(s, from_attributes=True) for s in slots]


booking_crud = BookingCRUD()
