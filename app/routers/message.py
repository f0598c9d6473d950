from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from app.deps import (
    CurrentUser,
    ProvidersClient,
    can_read_or_manage_booking,
    can_write_booking,
    get_messaging_channel,
    get_providers_client,
)
from app.schemas import (
    ConversationResponse,
    ConversationStart,
    MessageCreate,
    MessageResponse,
)
from app.services.lifecycle import provider_display_name
from app.services.messaging import MessagingChannel

router = APIRouter(prefix="/conversations", tags=["messages"])


@router.post("/", response_model=ConversationResponse)
async def start_conversation(
    payload: ConversationStart,
    current_user: CurrentUser = Depends(can_write_booking),
    providers_client: ProvidersClient = Depends(get_providers_client),
    channel: MessagingChannel = Depends(get_messaging_channel),
) -> ConversationResponse:
    provider = await providers_client.get_provider(payload.provider_id, current_user)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Provider not found",
        )
    conversation = await channel.start_conversation(
        client_id=current_user.id,
        client_name=current_user.username,
        provider_id=payload.provider_id,
        provider_user_id=UUID(provider["user_id"]),
        provider_name=provider_display_name(provider),
    )
    return ConversationResponse.model_validate(conversation, from_attributes=True)


@router.get("/", response_model=list[ConversationResponse])
async def list_conversations(
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
    channel: MessagingChannel = Depends(get_messaging_channel),
) -> list[ConversationResponse]:
    conversations = await channel.list_conversations(current_user.id)
    return [
        ConversationResponse.model_validate(c, from_attributes=True)
        for c in conversations
    ]


@router.get("/{conversation_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    conversation_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
    channel: MessagingChannel = Depends(get_messaging_channel),
) -> list[MessageResponse]:
    messages = await channel.list_messages(conversation_id, current_user.id)
    return [MessageResponse.model_validate(m, from_attributes=True) for m in messages]


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: UUID,
    payload: MessageCreate,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
    channel: MessagingChannel = Depends(get_messaging_channel),
) -> MessageResponse:
    message = await channel.send_message(conversation_id, current_user.id, payload.content)
    return MessageResponse.model_validate(message, from_attributes=True)


@router.post("/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_manage_booking),
    channel: MessagingChannel = Depends(get_messaging_channel),
) -> dict[str, int]:
    updated = await channel.mark_read(conversation_id, current_user.id)
    return {"updated": updated}
