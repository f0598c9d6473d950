"""
Notification copy.

Every NotificationType has one client-facing and one provider-facing
template. `template_for` matches exhaustively over the enum, so a new type
without copy is flagged by the type checker via `assert_never`.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import StrEnum
from typing import assert_never
from zoneinfo import ZoneInfo

from app import settings
from app.models import NotificationType

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_STREAM_LINK = "[[stream_link]]"
_TIMESTAMP_KEYS = {"start_time", "end_time"}


class RecipientRole(StrEnum):
    CLIENT = "client"
    PROVIDER = "provider"


def template_for(type_: NotificationType, role: RecipientRole) -> str:
    client: str
    provider: str
    match type_:
        case NotificationType.BOOKING_REQUEST:
            client = "Your booking request for {provider_name} on {start_time} is being processed."
            provider = "{client_name} booked you for {start_time} - {end_time} ({duration} hours)."
        case NotificationType.BOOKING_PAYMENT:
            client = "Payment for your booking with {provider_name} on {start_time} has been confirmed."
            provider = "Payment from {client_name} for the session on {start_time} has been received."
        case NotificationType.BOOKING_ACCEPTED:
            client = "{provider_name} accepted your booking for {start_time} on {platform}."
            provider = "You accepted the booking from {client_name} for {start_time}."
        case NotificationType.BOOKING_REJECTED:
            client = "{provider_name} declined your booking for {start_time} on {platform}. Reason: {reason}"
            provider = "You declined the booking from {client_name} for {start_time}."
        case NotificationType.BOOKING_CANCELLED:
            client = "Your booking with {provider_name} for {start_time} has been cancelled. Reason: {reason}"
            provider = "The booking from {client_name} for {start_time} has been cancelled. Reason: {reason}"
        case NotificationType.STREAM_STARTED:
            client = "{provider_name} started the live stream for your booking on {start_time}.[[stream_link]]"
            provider = "You started the live stream with {client_name}."
        case NotificationType.STREAM_ENDED:
            client = "{provider_name} ended the live stream for your booking."
            provider = "You ended the live stream with {client_name}."
        case NotificationType.RESCHEDULE_REQUEST:
            client = "You asked {provider_name} to reschedule the session on {start_time}. Reason: {reason}"
            provider = "{client_name} asked to reschedule the session on {start_time}. Reason: {reason}"
        case NotificationType.RESCHEDULE_ACCEPTED:
            client = "{provider_name} accepted your reschedule request. New time: {start_time}."
            provider = "You accepted the reschedule request from {client_name}."
        case NotificationType.RESCHEDULE_REJECTED:
            client = "{provider_name} declined your reschedule request; the booking was cancelled."
            provider = "You declined the reschedule request from {client_name}."
        case NotificationType.ITEM_RECEIVED:
            client = "{provider_name} received your items and is ready to go live."
            provider = "You received the items from {client_name} for the live session."
        case NotificationType.NEW_MESSAGE:
            client = "You have a new message from {provider_name}"
            provider = "You have a new message from {client_name}"
        case (
            NotificationType.INFO
            | NotificationType.WARNING
            | NotificationType.CONFIRMATION
        ):
            client = provider = "{message}"
        case _:
            assert_never(type_)
    return client if role is RecipientRole.CLIENT else provider


def format_timestamp(value: datetime | str) -> str:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return value.astimezone(ZoneInfo(settings.DISPLAY_TIMEZONE)).strftime("%d %B %H:%M")


def render(template: str, context: dict[str, object]) -> str:
    """Interpolate context into a template; unknown placeholders become ''."""
    link = context.get("stream_link")
    template = template.replace(_STREAM_LINK, f" Join here: {link}" if link else "")

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        value = context.get(key)
        if value is None or value == "":
            return ""
        if key in _TIMESTAMP_KEYS:
            return format_timestamp(value)  # type: ignore[arg-type]
        return str(value)

    return _PLACEHOLDER.sub(_sub, template)


def render_message(
    type_: NotificationType, role: RecipientRole, context: dict[str, object]
) -> str:
    return render(template_for(type_, role), context)
