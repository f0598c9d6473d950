from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from loguru import logger
from tortoise.exceptions import IntegrityError
from tortoise.expressions import F

from app.crud import to_utc
from app.models import Voucher, VoucherUsage
from app.schemas import VoucherCreate, VoucherResponse, VoucherValidation

NOT_FOUND = "Voucher not found"
EXPIRED = "Voucher has expired"
INACTIVE = "Voucher is no longer active"
DEPLETED = "Voucher has been fully redeemed"
ALREADY_USED = "Voucher already applied to this booking"


@dataclass(frozen=True)
class UsageResult:
    ok: bool
    usage: VoucherUsage | None = None
    error: str | None = None


def normalize_code(code: str) -> str:
    return code.strip().upper()


class VoucherLedger:
    """
    Voucher inventory. Business-rule failures come back as structured
    results; only infrastructure errors raise.
    """

    async def create(self, payload: VoucherCreate) -> VoucherResponse:
        voucher = await Voucher.create(
            code=normalize_code(payload.code),
            description=payload.description,
            discount_amount=payload.discount_amount,
            total_quantity=payload.total_quantity,
            remaining_quantity=payload.total_quantity,
            is_active=True,
            expires_at=payload.expires_at,
        )
        return VoucherResponse.model_validate(voucher, from_attributes=True)

    async def list_vouchers(self) -> list[VoucherResponse]:
        return [
            VoucherResponse.model_validate(v, from_attributes=True)
            for v in await Voucher.all()
        ]

    async def deactivate(self, voucher_id: UUID) -> bool:
        return bool(await Voucher.filter(id=voucher_id).update(is_active=False))

    async def validate(
        self,
        code: str,
        booking_amount: Decimal,
        now: datetime | None = None,
    ) -> VoucherValidation:
        now = now or datetime.now(timezone.utc)
        voucher = await Voucher.get_or_none(code=normalize_code(code), is_active=True)
        if voucher is None:
            return VoucherValidation(is_valid=False, error=NOT_FOUND)
        # compare timestamps directly; the active flag may lag behind expiry
        if to_utc(voucher.expires_at) <= now:
            return VoucherValidation(is_valid=False, error=EXPIRED)
        if voucher.remaining_quantity <= 0:
            return VoucherValidation(is_valid=False, error=DEPLETED)

        return VoucherValidation(
            is_valid=True,
            voucher=VoucherResponse.model_validate(voucher, from_attributes=True),
            discount_amount=min(voucher.discount_amount, booking_amount),
        )

    async def track_usage(
        self,
        voucher_id: UUID,
        booking_id: UUID,
        user_id: UUID,
        discount_applied: Decimal,
        original_price: Decimal,
        final_price: Decimal,
        now: datetime | None = None,
    ) -> UsageResult:
        """
        Record that a voucher was spent on a booking.

        The usage row is inserted first (unique per voucher/booking), then the
        counter is decremented with a single conditional UPDATE so concurrent
        redemptions cannot push it below zero. If the decrement does not take,
        the usage row is deleted again before reporting failure.
        """
        now = now or datetime.now(timezone.utc)
        try:
            usage = await VoucherUsage.create(
                voucher_id=voucher_id,
                booking_id=booking_id,
                user_id=user_id,
                discount_applied=discount_applied,
                original_price=original_price,
                final_price=final_price,
            )
        except IntegrityError:
            logger.info(
                "Voucher usage already recorded: voucher_id={} booking_id={}",
                voucher_id,
                booking_id,
            )
            return UsageResult(ok=False, error=ALREADY_USED)

        decremented = await Voucher.filter(
            id=voucher_id,
            is_active=True,
            expires_at__gt=now,
            remaining_quantity__gt=0,
        ).update(remaining_quantity=F("remaining_quantity") - 1)

        if decremented == 1 and not await self._verify_decrement(voucher_id):
            await Voucher.filter(id=voucher_id).update(
                remaining_quantity=F("remaining_quantity") + 1
            )
            decremented = 0

        if decremented == 1:
            logger.info(
                "Voucher redeemed: voucher_id={} booking_id={} discount={}",
                voucher_id,
                booking_id,
                discount_applied,
            )
            return UsageResult(ok=True, usage=usage)

        await self._rollback_usage(usage)
        return UsageResult(ok=False, error=await self._rejection_reason(voucher_id, now))

    async def _rejection_reason(self, voucher_id: UUID, now: datetime) -> str:
        voucher = await Voucher.get_or_none(id=voucher_id)
        if voucher is None:
            return NOT_FOUND
        if not voucher.is_active:
            return INACTIVE
        if to_utc(voucher.expires_at) <= now:
            return EXPIRED
        return DEPLETED

    async def _verify_decrement(self, voucher_id: UUID) -> bool:
        voucher = await Voucher.get_or_none(id=voucher_id)
        return (
            voucher is not None
            and 0 <= voucher.remaining_quantity < voucher.total_quantity
        )

    async def _rollback_usage(self, usage: VoucherUsage) -> None:
        logger.warning(
            "Voucher usage rollback: usage_id={} voucher_id={} booking_id={}",
            usage.id,
            usage.voucher_id,
            usage.booking_id,
        )
        await VoucherUsage.filter(id=usage.id).delete()

    async def usage_for_booking(self, booking_id: UUID) -> VoucherUsage | None:
        return await VoucherUsage.get_or_none(booking_id=booking_id)
