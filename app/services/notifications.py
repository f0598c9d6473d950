from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from tortoise.expressions import Q

from app.errors import NotificationError
from app.models import Booking, Notification, NotificationType
from app.services.templates import RecipientRole, render_message


@dataclass(frozen=True)
class Recipient:
    """Either a platform user (client side) or a provider, never both."""

    role: RecipientRole
    user_id: UUID | None = None
    provider_id: UUID | None = None

    @classmethod
    def client(cls, user_id: UUID) -> Recipient:
        return cls(role=RecipientRole.CLIENT, user_id=user_id)

    @classmethod
    def provider(cls, provider_id: UUID) -> Recipient:
        return cls(role=RecipientRole.PROVIDER, provider_id=provider_id)


def booking_context(booking: Booking, **extra: object) -> dict[str, object]:
    duration = (booking.end_datetime - booking.start_datetime).total_seconds() / 3600
    return {
        "client_name": booking.client_name,
        "provider_name": booking.provider_name,
        "start_time": booking.start_datetime,
        "end_time": booking.end_datetime,
        "platform": booking.platform,
        "duration": f"{duration:g}",
        "reason": booking.reason,
        **extra,
    }


class NotificationEmitter:
    async def emit(
        self,
        recipient: Recipient,
        type_: NotificationType,
        context: dict[str, object],
        booking_id: UUID | None = None,
    ) -> Notification:
        message = render_message(type_, recipient.role, context)
        try:
            return await Notification.create(
                user_id=recipient.user_id,
                provider_id=recipient.provider_id,
                type=type_,
                message=message,
                booking_id=booking_id,
                is_read=False,
            )
        except Exception as exc:
            logger.warning(
                "Notification insert failed: type={} role={} booking_id={}",
                type_,
                recipient.role,
                booking_id,
            )
            raise NotificationError(str(exc)) from exc

    async def emit_pair(
        self,
        primary: Recipient,
        secondary: Recipient,
        type_: NotificationType,
        context: dict[str, object],
        booking_id: UUID | None = None,
    ) -> list[Notification]:
        """
        Notify the acting party and the counterparty.
        Only a failure of the primary copy propagates; the secondary copy is
        logged and dropped.
        """
        sent = [await self.emit(primary, type_, context, booking_id)]
        try:
            sent.append(await self.emit(secondary, type_, context, booking_id))
        except NotificationError:
            logger.warning(
                "Secondary notification dropped: type={} booking_id={}", type_, booking_id
            )
        return sent

    async def notify_booking(
        self,
        booking: Booking,
        type_: NotificationType,
        primary: RecipientRole,
        counterparty: bool = True,
        **extra: object,
    ) -> list[Notification]:
        """
        Best-effort booking notification: never raises, so a committed state
        transition is never undone by a notification failure.
        """
        client = Recipient.client(booking.client_id)
        provider = Recipient.provider(booking.provider_id)
        first, second = (client, provider) if primary is RecipientRole.CLIENT else (provider, client)
        context = booking_context(booking, **extra)
        try:
            if counterparty:
                return await self.emit_pair(first, second, type_, context, booking.id)
            return [await self.emit(first, type_, context, booking.id)]
        except NotificationError:
            logger.warning(
                "Booking notification failed: type={} booking_id={}", type_, booking.id
            )
            return []

    @staticmethod
    def _addressed_to(user_id: UUID | None, provider_id: UUID | None) -> Q:
        if user_id is None and provider_id is None:
            raise ValueError("a recipient is required")
        clauses = []
        if user_id is not None:
            clauses.append(Q(user_id=user_id))
        if provider_id is not None:
            clauses.append(Q(provider_id=provider_id))
        return Q(*clauses, join_type="OR")

    async def list_for(
        self,
        user_id: UUID | None = None,
        provider_id: UUID | None = None,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Notification]:
        qs = Notification.filter(self._addressed_to(user_id, provider_id))
        if unread_only:
            qs = qs.filter(is_read=False)
        return await qs.limit(limit)

    async def mark_read(
        self,
        notification_id: UUID,
        user_id: UUID | None = None,
        provider_id: UUID | None = None,
    ) -> bool:
        updated = await Notification.filter(
            self._addressed_to(user_id, provider_id), id=notification_id
        ).update(is_read=True)
        return bool(updated)

    async def mark_all_read(
        self, user_id: UUID | None = None, provider_id: UUID | None = None
    ) -> int:
        return await Notification.filter(
            self._addressed_to(user_id, provider_id), is_read=False
        ).update(is_read=True)
