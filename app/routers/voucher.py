from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from app.deps import (
    CurrentUser,
    can_admin_vouchers,
    get_current_user,
    get_voucher_ledger,
)
from app.schemas import (
    VoucherCreate,
    VoucherResponse,
    VoucherValidateRequest,
    VoucherValidation,
)
from app.services.vouchers import VoucherLedger

router = APIRouter(prefix="/vouchers", tags=["vouchers"])


@router.post(
    "/",
    response_model=VoucherResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(can_admin_vouchers)],
)
async def create_voucher(
    payload: VoucherCreate,
    ledger: VoucherLedger = Depends(get_voucher_ledger),
) -> VoucherResponse:
    return await ledger.create(payload)


@router.get(
    "/",
    response_model=list[VoucherResponse],
    dependencies=[Depends(can_admin_vouchers)],
)
async def list_vouchers(
    ledger: VoucherLedger = Depends(get_voucher_ledger),
) -> list[VoucherResponse]:
    return await ledger.list_vouchers()


@router.post(
    "/{voucher_id}/deactivate",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(can_admin_vouchers)],
)
async def deactivate_voucher(
    voucher_id: UUID,
    ledger: VoucherLedger = Depends(get_voucher_ledger),
) -> None:
    if not await ledger.deactivate(voucher_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Voucher not found"
        )


@router.post("/validate", response_model=VoucherValidation)
async def validate_voucher(
    payload: VoucherValidateRequest,
    _: CurrentUser = Depends(get_current_user),
    ledger: VoucherLedger = Depends(get_voucher_ledger),
) -> VoucherValidation:
    """Business-rule failures come back as `is_valid: false` with a reason, never as 4xx."""
    return await ledger.validate(payload.code, payload.booking_amount)
