from __future__ import annotations

import re
from datetime import datetime, timezone
from uuid import UUID

from loguru import logger
from tortoise.exceptions import IntegrityError
from tortoise.expressions import Q

from app.errors import (
    ConversationNotFound,
    ForbiddenContent,
    NotificationError,
    NotParticipant,
)
from app.models import Conversation, Message, NotificationType
from app.services.notifications import NotificationEmitter, Recipient

# contact details that would take the conversation off-platform
FORBIDDEN_PATTERNS = (
    re.compile(r"\d{3,}"),
    re.compile(r"(?:\+62|\b62|\b08)[\s.-]?\d"),
    re.compile(r"\d{2,}[\s-]?\d{2,}"),
    re.compile(r"@|\.(?:com|net|org|edu|gov|mil|biz|info|io|co\.id|co|id)\b", re.IGNORECASE),
)


def contains_forbidden_content(content: str) -> bool:
    return any(p.search(content) for p in FORBIDDEN_PATTERNS)


class MessagingChannel:
    def __init__(self, emitter: NotificationEmitter) -> None:
        self._emitter = emitter

    async def start_conversation(
        self,
        client_id: UUID,
        client_name: str,
        provider_id: UUID,
        provider_user_id: UUID,
        provider_name: str,
    ) -> Conversation:
        """Return the conversation for the pair, creating it on first contact."""
        existing = await Conversation.get_or_none(client_id=client_id, provider_id=provider_id)
        if existing is not None:
            return existing
        try:
            return await Conversation.create(
                client_id=client_id,
                client_name=client_name,
                provider_id=provider_id,
                provider_user_id=provider_user_id,
                provider_name=provider_name,
            )
        except IntegrityError:
            # lost the race against a concurrent first message
            return await Conversation.get(client_id=client_id, provider_id=provider_id)

    async def get_conversation(self, conversation_id: UUID, user_id: UUID) -> Conversation:
        conversation = await Conversation.get_or_none(id=conversation_id)
        if conversation is None:
            raise ConversationNotFound()
        if user_id not in (conversation.client_id, conversation.provider_user_id):
            raise NotParticipant("You are not a participant of this conversation")
        return conversation

    async def send_message(
        self, conversation_id: UUID, sender_id: UUID, content: str
    ) -> Message:
        if contains_forbidden_content(content):
            logger.info(
                "Message rejected by content filter: conversation_id={} sender_id={}",
                conversation_id,
                sender_id,
            )
            raise ForbiddenContent()

        conversation = await self.get_conversation(conversation_id, sender_id)
        message = await Message.create(
            conversation_id=conversation.id, sender_id=sender_id, content=content
        )
        await Conversation.filter(id=conversation.id).update(
            last_message_at=datetime.now(timezone.utc)
        )

        if sender_id == conversation.client_id:
            recipient = Recipient.provider(conversation.provider_id)
        else:
            recipient = Recipient.client(conversation.client_id)
        context = {
            "client_name": conversation.client_name,
            "provider_name": conversation.provider_name,
        }
        try:
            await self._emitter.emit(recipient, NotificationType.NEW_MESSAGE, context)
        except NotificationError:
            logger.warning(
                "Message notification failed: conversation_id={} message_id={}",
                conversation.id,
                message.id,
            )
        return message

    async def list_conversations(self, user_id: UUID) -> list[Conversation]:
        return await Conversation.filter(
            Q(client_id=user_id, provider_user_id=user_id, join_type="OR")
        ).order_by("-last_message_at", "-created_at")

    async def list_messages(self, conversation_id: UUID, user_id: UUID) -> list[Message]:
        conversation = await self.get_conversation(conversation_id, user_id)
        return await Message.filter(conversation_id=conversation.id)

    async def mark_read(self, conversation_id: UUID, user_id: UUID) -> int:
        """Mark the other participant's messages as read."""
        conversation = await self.get_conversation(conversation_id, user_id)
        return await Message.filter(
            conversation_id=conversation.id, is_read=False
        ).exclude(sender_id=user_id).update(is_read=True)

