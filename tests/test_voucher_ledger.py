"""VoucherLedger against in-memory sqlite."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from app.models import Voucher, VoucherUsage
from app.schemas import VoucherCreate
from app.services.vouchers import (
    ALREADY_USED,
    DEPLETED,
    EXPIRED,
    INACTIVE,
    NOT_FOUND,
    VoucherLedger,
)

from .factories import CLIENT_ID, create_booking_row, create_voucher_row


async def _redeem(ledger: VoucherLedger, voucher: Voucher, booking_id):
    return await ledger.track_usage(
        voucher_id=voucher.id,
        booking_id=booking_id,
        user_id=CLIENT_ID,
        discount_applied=Decimal("20000"),
        original_price=Decimal("100000"),
        final_price=Decimal("80000"),
    )


class TestValidate:
    async def test_lookup_is_case_insensitive(self, db):
        await create_voucher_row(code="HEMAT20")
        result = await VoucherLedger().validate("hemat20", Decimal("100000"))
        assert result.is_valid is True
        assert result.discount_amount == Decimal("20000")

    async def test_discount_capped_at_booking_amount(self, db):
        await create_voucher_row(discount_amount=Decimal("50000"))
        result = await VoucherLedger().validate("HEMAT20", Decimal("30000"))
        assert result.discount_amount == Decimal("30000")

    async def test_unknown_code(self, db):
        result = await VoucherLedger().validate("NOPE", Decimal("100000"))
        assert result.is_valid is False
        assert result.error == NOT_FOUND

    async def test_inactive_voucher_not_found(self, db):
        await create_voucher_row(is_active=False)
        result = await VoucherLedger().validate("HEMAT20", Decimal("100000"))
        assert result.error == NOT_FOUND

    async def test_expired_but_still_flagged_active(self, db):
        await create_voucher_row(expires_at=datetime.now(UTC) - timedelta(minutes=1))
        result = await VoucherLedger().validate("HEMAT20", Decimal("100000"))
        assert result.is_valid is False
        assert result.error == EXPIRED

    async def test_depleted(self, db):
        await create_voucher_row(remaining_quantity=0)
        result = await VoucherLedger().validate("HEMAT20", Decimal("100000"))
        assert result.error == DEPLETED


class TestTrackUsage:
    async def test_redemption_decrements_counter(self, db):
        voucher = await create_voucher_row()
        booking = await create_booking_row()
        result = await _redeem(VoucherLedger(), voucher, booking.id)
        assert result.ok is True
        await voucher.refresh_from_db()
        assert voucher.remaining_quantity == 4

    async def test_same_booking_twice_rejected(self, db):
        voucher = await create_voucher_row()
        booking = await create_booking_row()
        ledger = VoucherLedger()
        await _redeem(ledger, voucher, booking.id)
        second = await _redeem(ledger, voucher, booking.id)
        assert second.ok is False
        assert second.error == ALREADY_USED
        await voucher.refresh_from_db()
        assert voucher.remaining_quantity == 4

    async def test_concurrent_redemptions_never_oversell(self, db):
        quantity = 3
        voucher = await create_voucher_row(total_quantity=quantity, remaining_quantity=quantity)
        bookings = [await create_booking_row() for _ in range(quantity + 1)]
        ledger = VoucherLedger()

        results = await asyncio.gather(*(_redeem(ledger, voucher, b.id) for b in bookings))

        assert sum(r.ok for r in results) == quantity
        failures = [r for r in results if not r.ok]
        assert len(failures) == 1
        assert failures[0].error == DEPLETED
        await voucher.refresh_from_db()
        assert voucher.remaining_quantity == 0
        assert await VoucherUsage.filter(voucher_id=voucher.id).count() == quantity

    async def test_last_unit_goes_to_exactly_one_of_two(self, db):
        voucher = await create_voucher_row(total_quantity=1, remaining_quantity=1)
        first, second = await create_booking_row(), await create_booking_row()
        ledger = VoucherLedger()
        results = await asyncio.gather(
            _redeem(ledger, voucher, first.id), _redeem(ledger, voucher, second.id)
        )
        assert sorted(r.ok for r in results) == [False, True]

    async def test_expired_voucher_usage_rolled_back(self, db):
        voucher = await create_voucher_row(expires_at=datetime.now(UTC) - timedelta(seconds=1))
        booking = await create_booking_row()
        result = await _redeem(VoucherLedger(), voucher, booking.id)
        assert result.ok is False
        assert result.error == EXPIRED
        assert await VoucherUsage.filter(booking_id=booking.id).count() == 0
        await voucher.refresh_from_db()
        assert voucher.remaining_quantity == 5

    async def test_inactive_voucher_reports_inactive(self, db):
        voucher = await create_voucher_row(is_active=False)
        booking = await create_booking_row()
        result = await _redeem(VoucherLedger(), voucher, booking.id)
        assert result.ok is False
        assert result.error == INACTIVE
        assert await VoucherUsage.filter(booking_id=booking.id).count() == 0


class TestAdministration:
    async def test_create_normalizes_code_and_fills_inventory(self, db):
        created = await VoucherLedger().create(
            VoucherCreate(
                code="promo-7",
                discount_amount=Decimal("7000"),
                total_quantity=10,
                expires_at=datetime.now(UTC) + timedelta(days=7),
            )
        )
        assert created.code == "PROMO-7"
        assert created.remaining_quantity == 10
        assert created.is_active is True

    async def test_deactivate(self, db):
        voucher = await create_voucher_row()
        ledger = VoucherLedger()
        assert await ledger.deactivate(voucher.id) is True
        result = await ledger.validate("HEMAT20", Decimal("100000"))
        assert result.is_valid is False
