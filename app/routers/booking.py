from enum import StrEnum
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from app.cache import get_slots_cache, invalidate_slots_cache, set_slots_cache
from app.crud import booking_crud
from app.deps import (
    CurrentUser,
    ProvidersClient,
    can_read_or_manage_booking,
    can_write_booking,
    get_current_user,
    get_lifecycle_manager,
    get_providers_client,
)
from app.models import Booking
from app.schemas import (
    BookingCreate,
    BookingFilters,
    BookingResponse,
    BookingSlot,
    CancellationResult,
    CancelRequest,
    CompleteRequest,
    RejectRequest,
    RescheduleDecision,
    StreamStart,
)
from app.scopes import BookingScope
from app.services.lifecycle import BookingLifecycleManager
from app.services.templates import RecipientRole

router = APIRouter(prefix="/bookings", tags=["bookings"])


# ---------------------------------------------------------------------------
# Ownership guard helpers
# ---------------------------------------------------------------------------


class Actor(StrEnum):
    CLIENT = "client"  # the booker, needs bookings:cancel / bookings:write
    PROVIDER = "provider"  # the booked provider's user, needs bookings:manage
    EITHER = "either"


def _is_admin_writer(current_user: CurrentUser) -> bool:
    return (
        BookingScope.ADMIN in current_user.scopes
        or BookingScope.ADMIN_WRITE in current_user.scopes
    )


def _assert_actor(
    booking: Booking | BookingResponse,
    actor: Actor,
    current_user: CurrentUser,
    client_scope: BookingScope = BookingScope.CANCEL,
) -> RecipientRole:
    """
    Raise HTTP 403 unless the caller may act on this booking in the given role,
    and return the role they act in.

    Rules:
      client   : `client_scope` + booker, OR admin
      provider : MANAGE + booked provider's user, OR admin
      either   : any of the above
    Admins act on the provider's side.
    """
    is_booker = current_user.id == booking.client_id
    is_provider = current_user.id == booking.provider_user_id
    as_client = is_booker and client_scope in current_user.scopes
    as_provider = is_provider and BookingScope.MANAGE in current_user.scopes

    if actor in (Actor.CLIENT, Actor.EITHER) and as_client:
        return RecipientRole.CLIENT
    if actor in (Actor.PROVIDER, Actor.EITHER) and as_provider:
        return RecipientRole.PROVIDER
    if _is_admin_writer(current_user):
        return RecipientRole.PROVIDER

    match actor:
        case Actor.CLIENT:
            detail = f"Requires '{client_scope}' scope as the booking owner."
        case Actor.PROVIDER:
            detail = f"Requires '{BookingScope.MANAGE}' scope as the booked provider."
        case Actor.EITHER:
            detail = (
                f"Requires '{client_scope}' scope as the booking owner, "
                f"or '{BookingScope.MANAGE}' scope as the booked provider."
            )
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("/slots", response_model=list[BookingSlot])
async def get_provider_slots(
    provider_id: UUID,
    _: CurrentUser = Depends(get_current_user),
) -> list[BookingSlot]:
    """
    Returns accepted time windows for a provider.
    Any authenticated user can call this: response contains NO user identity.
    """
    cached = await get_slots_cache(provider_id)
    if cached is not None:
        logger.debug("Cache hit for slots: provider_id={}", provider_id)
        return cached

    logger.debug("Cache miss for slots: provider_id={}", provider_id)
    slots = await booking_crud.list_occupied_slots(provider_id)
    await set_slots_cache(provider_id, slots)
    return slots


@router.get("/", response_model=list[BookingResponse])
async def list_bookings(
    filters: BookingFilters = Depends(),
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> list[BookingResponse]:
    is_admin = (
        BookingScope.ADMIN in current_user.scopes
        or BookingScope.ADMIN_READ in current_user.scopes
    )
    is_manager = BookingScope.MANAGE in current_user.scopes
    is_reader = BookingScope.READ in current_user.scopes

    if is_admin:
        return await booking_crud.list_bookings(filters=filters)
    if is_manager and not is_reader:
        return await booking_crud.list_bookings(
            filters=filters, provider_user_id=current_user.id
        )
    return await booking_crud.list_bookings(filters=filters, client_id=current_user.id)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
) -> BookingResponse:
    is_admin = (
        BookingScope.ADMIN in current_user.scopes
        or BookingScope.ADMIN_READ in current_user.scopes
    )
    is_manager = BookingScope.MANAGE in current_user.scopes
    is_reader = BookingScope.READ in current_user.scopes

    if is_admin:
        booking = await booking_crud.get_booking(booking_id)
    elif is_manager and not is_reader:
        booking = await booking_crud.get_booking(
            booking_id, provider_user_id=current_user.id
        )
    else:
        booking = await booking_crud.get_booking(booking_id, client_id=current_user.id)

    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )
    return booking


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    current_user: CurrentUser = Depends(can_write_booking),
    providers_client: ProvidersClient = Depends(get_providers_client),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    # 1. Validate provider exists and is active
    provider = await providers_client.get_provider(payload.provider_id, current_user)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Provider not found",
        )
    if provider.get("status", "active") != "active":
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=(
                f"Provider is not available for booking (status: {provider.get('status')})"
            ),
        )

    # 2. Declared blocked windows + accepted bookings are checked in the lifecycle
    unavailabilities = await providers_client.get_unavailabilities(
        payload.provider_id, current_user
    )
    return await lifecycle.create_booking(payload, current_user, provider, unavailabilities)


# ---------------------------------------------------------------------------
# Provider decisions
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await lifecycle.get(booking_id)
    _assert_actor(booking, Actor.PROVIDER, current_user)
    accepted = await lifecycle.accept_booking(booking_id)
    await invalidate_slots_cache(accepted.provider_id)
    return accepted


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: UUID,
    payload: RejectRequest,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await lifecycle.get(booking_id)
    _assert_actor(booking, Actor.PROVIDER, current_user)
    return await lifecycle.reject_booking(booking_id, payload.reason)


@router.post("/{booking_id}/reschedule/resolve", response_model=BookingResponse)
async def resolve_reschedule(
    booking_id: UUID,
    payload: RescheduleDecision,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await lifecycle.get(booking_id)
    _assert_actor(booking, Actor.PROVIDER, current_user)
    resolved = await lifecycle.resolve_reschedule(booking_id, payload)
    await invalidate_slots_cache(resolved.provider_id)
    return resolved


# ---------------------------------------------------------------------------
# Cancellation / reschedule request
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/cancel", response_model=CancellationResult)
async def cancel_booking(
    booking_id: UUID,
    payload: CancelRequest,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle_manager),
) -> CancellationResult:
    booking = await lifecycle.get(booking_id)
    role = _assert_actor(booking, Actor.EITHER, current_user)
    result = await lifecycle.cancel_or_reschedule(
        booking_id, payload.reason, payload.is_reschedule, actor=role
    )
    if not payload.is_reschedule:
        await invalidate_slots_cache(result.booking.provider_id)
    return result


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/items-received", response_model=BookingResponse)
async def mark_items_received(
    booking_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await lifecycle.get(booking_id)
    _assert_actor(booking, Actor.PROVIDER, current_user)
    return await lifecycle.mark_items_received(booking_id)


@router.post("/{booking_id}/stream/start", response_model=BookingResponse)
async def start_stream(
    booking_id: UUID,
    payload: StreamStart,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await lifecycle.get(booking_id)
    _assert_actor(booking, Actor.PROVIDER, current_user)
    return await lifecycle.start_stream(booking_id, payload.stream_link)


@router.post("/{booking_id}/stream/end", response_model=BookingResponse)
async def end_stream(
    booking_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await lifecycle.get(booking_id)
    _assert_actor(booking, Actor.PROVIDER, current_user)
    return await lifecycle.end_stream(booking_id)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    payload: CompleteRequest,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await lifecycle.get(booking_id)
    _assert_actor(booking, Actor.CLIENT, current_user, client_scope=BookingScope.WRITE)
    return await lifecycle.complete_booking(booking_id, payload, current_user)
