from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from urllib.parse import quote, unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from loguru import logger

from app import settings
from app.crud import BookingCRUD, booking_crud
from app.errors import GatewayUnavailable
from app.scopes import BOOKING_SCOPE_DESCRIPTIONS, BookingScope
from app.services.lifecycle import BookingLifecycleManager
from app.services.messaging import MessagingChannel
from app.services.notifications import NotificationEmitter
from app.services.payments import PaymentGatewayAdapter
from app.services.vouchers import VoucherLedger


@dataclass
class CurrentUser:
    id: UUID
    username: str
    scopes: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin:scopes" in self.scopes or BookingScope.ADMIN in self.scopes


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the identity headers injected by the auth gateway after token
    validation. The JWT has already been verified, these headers are trusted.
    """
    try:
        user_id = UUID(x_user_id)
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity from gateway",
        ) from None

    scopes = x_user_scopes.split(" ") if x_user_scopes else []

    return CurrentUser(id=user_id, username=unquote(x_username), scopes=scopes)


def _describe(scope: str) -> str:
    description = BOOKING_SCOPE_DESCRIPTIONS.get(scope)
    return f"{scope} ({description})" if description else scope


def require_scopes(*required: str):
    """
    Factory that returns a dependency enforcing one or more scopes.

    Usage:
        @router.get("/protected")
        async def route(user = Depends(require_scopes("bookings:read"))):
            ...
    """

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        missing = [s for s in required if s not in current_user.scopes]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(_describe(s) for s in missing)}",
            )
        return current_user

    return _dep


# ---------------------------------------------------------------------------
# Pre-built scope dependencies
# ---------------------------------------------------------------------------

can_write_booking = require_scopes(BookingScope.WRITE)
can_admin_vouchers = require_scopes(BookingScope.ADMIN_VOUCHERS)
can_admin_bookings = require_scopes(BookingScope.ADMIN_WRITE)


async def can_read_or_manage_booking(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """
    Passes if the user can read bookings (client/admin) OR manage bookings (provider).
    - bookings:read   → client sees own bookings
    - bookings:manage → provider sees bookings made with them
    - admin:bookings* → admin sees all
    """
    has_read = BookingScope.READ in current_user.scopes
    has_manage = BookingScope.MANAGE in current_user.scopes
    has_admin = (
        BookingScope.ADMIN in current_user.scopes
        or BookingScope.ADMIN_READ in current_user.scopes
    )
    if not (has_read or has_manage or has_admin):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=(
                f"Requires '{BookingScope.READ}' (clients), "
                f"'{BookingScope.MANAGE}' (providers), "
                f"or '{BookingScope.ADMIN_READ}' (admin)."
            ),
        )
    return current_user


def _identity_headers(user: CurrentUser) -> dict[str, str]:
    return {
        "X-User-Id": str(user.id),
        "X-Username": quote(user.username),
        "X-User-Scopes": " ".join(user.scopes),
    }


# ---------------------------------------------------------------------------
# ProvidersClient, thin async wrapper around providers-ms internal API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_providers_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.providers_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class ProvidersClient:
    """
    Thin async wrapper around the providers-ms internal API.
    Forwards the caller's identity headers so providers-ms auth deps work normally.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_providers_http_client()

    async def get_provider(self, provider_id: UUID, user: CurrentUser) -> dict | None:
        """Returns provider dict or None if 404. Raises HTTPException on other errors."""
        resp = await self._client.get(
            f"/providers/{provider_id}", headers=_identity_headers(user)
        )
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"providers-ms returned {resp.status_code}",
            )
        return resp.json()

    async def get_unavailabilities(
        self, provider_id: UUID, user: CurrentUser
    ) -> list[dict]:
        """Returns the provider's declared blocked windows."""
        resp = await self._client.get(
            f"/providers/{provider_id}/unavailabilities",
            headers=_identity_headers(user),
        )
        if resp.status_code >= 400:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"providers-ms returned {resp.status_code} for unavailabilities",
            )
        return resp.json()

    async def submit_rating(
        self,
        provider_id: UUID,
        *,
        rating: int,
        comment: str | None,
        client_name: str,
        booking_id: UUID,
        user: CurrentUser,
    ) -> bool:
        """Record a testimonial. Returns False if the rating store refused or was unreachable."""
        try:
            resp = await self._client.post(
                f"/providers/{provider_id}/testimonials",
                json={
                    "rating": rating,
                    "comment": comment,
                    "client_name": client_name,
                    "booking_id": str(booking_id),
                },
                headers=_identity_headers(user),
            )
        except httpx.RequestError:
            logger.warning(
                "Rating store unreachable: provider_id={} booking_id={}",
                provider_id,
                booking_id,
            )
            return False
        return resp.status_code < 400


_providers_client = ProvidersClient()


def get_providers_client() -> ProvidersClient:
    return _providers_client


# ---------------------------------------------------------------------------
# SnapClient, Midtrans Snap and core API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_snap_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        auth=httpx.BasicAuth(settings.midtrans_server_key, ""),
        timeout=httpx.Timeout(10.0),
        headers={"Accept": "application/json"},
    )


class SnapClient:
    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_snap_http_client()

    async def create_transaction(self, body: dict) -> dict:
        """Returns {token, redirect_url}. Raises GatewayUnavailable on any failure."""
        order_id = body["transaction_details"]["order_id"]
        try:
            resp = await self._client.post(
                f"{settings.midtrans_snap_url}/transactions", json=body
            )
        except httpx.RequestError as exc:
            logger.error("Snap unreachable: order_id={} error={}", order_id, exc)
            raise GatewayUnavailable() from exc
        if resp.status_code >= 400:
            logger.error(
                "Snap rejected transaction: order_id={} status={} body={}",
                order_id,
                resp.status_code,
                resp.text,
            )
            raise GatewayUnavailable(f"Payment gateway returned {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise GatewayUnavailable("Payment gateway returned an invalid response") from exc

    async def refund(self, order_id: str, amount: Decimal, reason: str) -> bool:
        """
        Request a refund for a settled order.
        Returns True on success, False on any error (silently degraded).
        """
        try:
            resp = await self._client.post(
                f"{settings.midtrans_api_url}/{order_id}/refund",
                json={"amount": int(amount), "reason": reason[:255]},
            )
        except httpx.RequestError:
            logger.warning("Refund request unreachable: order_id={}", order_id)
            return False
        return resp.status_code < 400


_snap_client = SnapClient()


def get_snap_client() -> SnapClient:
    return _snap_client


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------

_notification_emitter = NotificationEmitter()
_voucher_ledger = VoucherLedger()


def get_booking_crud() -> BookingCRUD:
    return booking_crud


def get_notification_emitter() -> NotificationEmitter:
    return _notification_emitter


def get_voucher_ledger() -> VoucherLedger:
    return _voucher_ledger


def get_lifecycle_manager(
    bookings: BookingCRUD = Depends(get_booking_crud),
    emitter: NotificationEmitter = Depends(get_notification_emitter),
    providers: ProvidersClient = Depends(get_providers_client),
    snap: SnapClient = Depends(get_snap_client),
) -> BookingLifecycleManager:
    return BookingLifecycleManager(bookings, emitter, providers, snap)


def get_payment_adapter(
    snap: SnapClient = Depends(get_snap_client),
    bookings: BookingCRUD = Depends(get_booking_crud),
    lifecycle: BookingLifecycleManager = Depends(get_lifecycle_manager),
    ledger: VoucherLedger = Depends(get_voucher_ledger),
    emitter: NotificationEmitter = Depends(get_notification_emitter),
) -> PaymentGatewayAdapter:
    return PaymentGatewayAdapter(snap, bookings, lifecycle, ledger, emitter)


def get_messaging_channel(
    emitter: NotificationEmitter = Depends(get_notification_emitter),
) -> MessagingChannel:
    return MessagingChannel(emitter)
