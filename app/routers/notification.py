from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.deps import (
    CurrentUser,
    ProvidersClient,
    get_current_user,
    get_notification_emitter,
    get_providers_client,
)
from app.schemas import NotificationResponse
from app.services.notifications import NotificationEmitter

router = APIRouter(prefix="/notifications", tags=["notifications"])


async def _own_provider_id(
    provider_id: UUID | None,
    current_user: CurrentUser,
    providers_client: ProvidersClient,
) -> UUID | None:
    """Providers read their provider-addressed inbox too; verify the profile is theirs."""
    if provider_id is None:
        return None
    provider = await providers_client.get_provider(provider_id, current_user)
    if provider is None or provider.get("user_id") != str(current_user.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Provider profile does not belong to the caller",
        )
    return provider_id


@router.get("/", response_model=list[NotificationResponse])
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    provider_id: UUID | None = None,
    current_user: CurrentUser = Depends(get_current_user),
    providers_client: ProvidersClient = Depends(get_providers_client),
    emitter: NotificationEmitter = Depends(get_notification_emitter),
) -> list[NotificationResponse]:
    own_provider = await _own_provider_id(provider_id, current_user, providers_client)
    notifications = await emitter.list_for(
        user_id=current_user.id,
        provider_id=own_provider,
        unread_only=unread_only,
        limit=limit,
    )
    return [
        NotificationResponse.model_validate(n, from_attributes=True)
        for n in notifications
    ]


@router.post("/{notification_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_notification_read(
    notification_id: UUID,
    provider_id: UUID | None = None,
    current_user: CurrentUser = Depends(get_current_user),
    providers_client: ProvidersClient = Depends(get_providers_client),
    emitter: NotificationEmitter = Depends(get_notification_emitter),
) -> None:
    own_provider = await _own_provider_id(provider_id, current_user, providers_client)
    if not await emitter.mark_read(
        notification_id, user_id=current_user.id, provider_id=own_provider
    ):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found"
        )


@router.post("/read-all")
async def mark_all_notifications_read(
    provider_id: UUID | None = None,
    current_user: CurrentUser = Depends(get_current_user),
    providers_client: ProvidersClient = Depends(get_providers_client),
    emitter: NotificationEmitter = Depends(get_notification_emitter),
) -> dict[str, int]:
    own_provider = await _own_provider_id(provider_id, current_user, providers_client)
    updated = await emitter.mark_all_read(user_id=current_user.id, provider_id=own_provider)
    return {"updated": updated}
