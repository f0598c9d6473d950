from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger

from app.crud import booking_crud
from app.deps import (
    CurrentUser,
    ProvidersClient,
    can_admin_bookings,
    can_read_or_manage_booking,
    can_write_booking,
    get_payment_adapter,
    get_providers_client,
)
from app.schemas import (
    PaymentCallback,
    PaymentCallbackResult,
    PaymentCreate,
    PaymentIntentResponse,
    PaymentResponse,
    PaymentWebhook,
)
from app.scopes import BookingScope
from app.services.payments import PaymentGatewayAdapter

router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(tags=["payments"])


def _assert_payer(user_id: UUID, current_user: CurrentUser) -> None:
    if user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Payment metadata belongs to another user",
        )


async def _get_provider(
    provider_id: UUID, current_user: CurrentUser, providers_client: ProvidersClient
) -> dict:
    provider = await providers_client.get_provider(provider_id, current_user)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Provider not found",
        )
    return provider


@router.post("/create", response_model=PaymentIntentResponse, response_model_by_alias=True)
async def create_payment(
    payload: PaymentCreate,
    current_user: CurrentUser = Depends(can_write_booking),
    providers_client: ProvidersClient = Depends(get_providers_client),
    adapter: PaymentGatewayAdapter = Depends(get_payment_adapter),
) -> PaymentIntentResponse:
    _assert_payer(payload.metadata.user_id, current_user)
    provider = await _get_provider(payload.metadata.streamer_id, current_user, providers_client)
    if provider.get("status", "active") != "active":
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Provider is not available for booking (status: {provider.get('status')})",
        )
    unavailabilities = await providers_client.get_unavailabilities(
        payload.metadata.streamer_id, current_user
    )
    return await adapter.create_payment_intent(payload, unavailabilities)


@router.post("/callback", response_model=PaymentCallbackResult)
async def payment_callback(
    payload: PaymentCallback,
    current_user: CurrentUser = Depends(can_write_booking),
    providers_client: ProvidersClient = Depends(get_providers_client),
    adapter: PaymentGatewayAdapter = Depends(get_payment_adapter),
) -> PaymentCallbackResult:
    """
    Called by the checkout client once the processor reports a result.
    Replays for the same transaction return the booking created the first time.
    """
    _assert_payer(payload.metadata.user_id, current_user)
    # provider status is not re-checked once the payment has settled
    provider = await _get_provider(
        payload.metadata.streamer_id, current_user, providers_client
    )
    booking = await adapter.handle_callback(payload.result, payload.metadata, provider)
    return PaymentCallbackResult(success=booking is not None, booking=booking)


@router.get("/booking/{booking_id}", response_model=PaymentResponse)
async def get_booking_payment(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
    adapter: PaymentGatewayAdapter = Depends(get_payment_adapter),
) -> PaymentResponse:
    booking = await booking_crud.get_booking(booking_id)
    is_admin = (
        BookingScope.ADMIN in current_user.scopes
        or BookingScope.ADMIN_READ in current_user.scopes
    )
    if booking is None or not (
        is_admin or current_user.id in (booking.client_id, booking.provider_user_id)
    ):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )

    payment = await adapter.get_payment(booking_id)
    if payment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found"
        )
    return PaymentResponse.model_validate(payment, from_attributes=True)


@router.post("/booking/{booking_id}/refund", response_model=PaymentResponse)
async def retry_booking_refund(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_admin_bookings),
    adapter: PaymentGatewayAdapter = Depends(get_payment_adapter),
) -> PaymentResponse:
    """Re-send a refund the payment gateway did not accept the first time."""
    payment = await adapter.retry_refund(booking_id)
    logger.info("Refund retried by {}: booking_id={}", current_user.id, booking_id)
    return PaymentResponse.model_validate(payment, from_attributes=True)


@webhook_router.post("/payment-webhook", response_class=PlainTextResponse)
async def payment_webhook(
    payload: PaymentWebhook,
    adapter: PaymentGatewayAdapter = Depends(get_payment_adapter),
):
    """
    Server-to-server notification from the processor. Delivery is at-least-once,
    so every outcome that is not a missing booking or a crash answers "OK".
    """
    try:
        await adapter.handle_webhook(payload)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Payment webhook failed: order_id={}", payload.order_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": str(exc)},
        )
    return PlainTextResponse("OK")
