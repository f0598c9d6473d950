"""
Domain errors.

Each error is an HTTPException so routers and services can raise it directly
and FastAPI renders the right status code.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import HTTPException, status


class InvalidRange(HTTPException):
    def __init__(self, detail: str = "start_datetime must be before end_datetime"):
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class ScheduleConflict(HTTPException):
    def __init__(self, detail: str = "Booking conflicts with an accepted booking"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class InvalidTransition(HTTPException):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot transition from '{current}' to '{target}'",
        )


class RescheduleLimitExceeded(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="A booking can only be rescheduled once",
        )


class RescheduleWindowClosed(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="Reschedule requests must be made at least 6 hours before start",
        )


class BookingNotFound(HTTPException):
    def __init__(self, booking_id: UUID | str | None = None):
        self.booking_id = booking_id
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")


class ConversationNotFound(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found"
        )


class NotParticipant(HTTPException):
    def __init__(self, detail: str = "You are not a participant of this booking"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class ForbiddenContent(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Messages may not contain phone numbers or email addresses",
        )


class InvalidVoucher(HTTPException):
    def __init__(self, reason: str):
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=reason)


class GatewayUnavailable(HTTPException):
    def __init__(self, detail: str = "Payment gateway unavailable"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


class NoOpenRefund(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="This payment has no refund waiting on the payment gateway",
        )


class RatingStoreUnavailable(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Rating could not be recorded; booking left unchanged",
        )


class PaymentCallbackError(HTTPException):
    """A step of post-payment booking materialization failed."""

    def __init__(self, step: str, reason: str, **identifiers: object):
        self.step = step
        self.reason = reason
        self.identifiers = {k: str(v) for k, v in identifiers.items()}
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": f"Payment callback failed at step '{step}': {reason}",
                "step": step,
                **self.identifiers,
            },
        )


class NotificationError(Exception):
    """Persisting a notification failed."""
