"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files: pytest discovers this by convention.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from tortoise import Tortoise, connections

from app.deps import (
    can_admin_vouchers,
    can_read_or_manage_booking,
    can_write_booking,
    get_current_user,
    get_lifecycle_manager,
    get_messaging_channel,
    get_notification_emitter,
    get_payment_adapter,
    get_providers_client,
    get_voucher_ledger,
)
from app.routers import booking, message, notification, payment, voucher
from app.services.notifications import NotificationEmitter

from .factories import make_admin, make_client, make_provider_user, provider_dict

# ---------------------------------------------------------------------------
# Default no-op collaborator mocks: prevent real HTTP calls in tests
# ---------------------------------------------------------------------------


def _noop_providers_client():
    mock = MagicMock()
    mock.get_provider = AsyncMock(return_value=provider_dict())
    mock.get_unavailabilities = AsyncMock(return_value=[])
    mock.submit_rating = AsyncMock(return_value=True)
    return mock


def _include_routers(app: FastAPI) -> None:
    app.include_router(booking.router)
    app.include_router(payment.router)
    app.include_router(payment.webhook_router)
    app.include_router(voucher.router)
    app.include_router(notification.router)
    app.include_router(message.router)


# ---------------------------------------------------------------------------
# App builder: used by all client fixtures
# ---------------------------------------------------------------------------


def build_app(
    current_user,
    providers_client=None,
    lifecycle=None,
    payment_adapter=None,
    voucher_ledger=None,
    emitter=None,
    channel=None,
) -> FastAPI:
    """
    Fresh FastAPI app with auth/scope dependencies overridden to return
    `current_user` unconditionally.

    Service collaborators default to MagicMocks; pass one in to script it.
    """
    app = FastAPI()
    _include_routers(app)

    async def _user():
        return current_user

    for dep in (
        can_read_or_manage_booking,
        can_write_booking,
        can_admin_vouchers,
        get_current_user,
    ):
        app.dependency_overrides[dep] = _user

    pc = providers_client if providers_client is not None else _noop_providers_client()
    app.dependency_overrides[get_providers_client] = lambda: pc
    app.dependency_overrides[get_lifecycle_manager] = lambda: lifecycle or MagicMock()
    app.dependency_overrides[get_payment_adapter] = lambda: payment_adapter or MagicMock()
    app.dependency_overrides[get_voucher_ledger] = lambda: voucher_ledger or MagicMock()
    app.dependency_overrides[get_notification_emitter] = lambda: emitter or MagicMock()
    app.dependency_overrides[get_messaging_channel] = lambda: channel or MagicMock()

    return app


# ---------------------------------------------------------------------------
# Reusable client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def client_client():
    return TestClient(build_app(make_client()), raise_server_exceptions=True)


@pytest.fixture()
def provider_client():
    return TestClient(build_app(make_provider_user()), raise_server_exceptions=True)


@pytest.fixture()
def admin_client():
    return TestClient(build_app(make_admin()), raise_server_exceptions=True)


@pytest.fixture()
def anon_app():
    """
    Bare app with NO dependency overrides.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    app = FastAPI()
    _include_routers(app)
    return app


@pytest.fixture()
def client_factory():
    def _make(current_user, **collaborators) -> TestClient:
        return TestClient(
            build_app(current_user, **collaborators),
            raise_server_exceptions=True,
        )

    return _make


# ---------------------------------------------------------------------------
# Database: service tests run against in-memory sqlite
# ---------------------------------------------------------------------------


@pytest.fixture()
async def db():
    await Tortoise.init(
        db_url="sqlite://:memory:",
        modules={"models": ["app.models"]},
        use_tz=True,
        timezone="UTC",
    )
    await Tortoise.generate_schemas()
    yield
    await connections.close_all()


@pytest.fixture()
def emitter() -> NotificationEmitter:
    return NotificationEmitter()


@pytest.fixture()
def snap():
    mock = MagicMock()
    mock.create_transaction = AsyncMock(
        return_value={"token": "snap-token", "redirect_url": "https://snap.example/pay"}
    )
    mock.refund = AsyncMock(return_value=True)
    return mock


@pytest.fixture()
def providers():
    return _noop_providers_client()
