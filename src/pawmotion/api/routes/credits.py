"""Video credit API endpoints.

- GET /api/credits/balance - Owner's current balance
- GET /api/credits/ledger - Owner's ledger entries (audit trail)
- POST /api/credits/redeem - Redeem a promotional code
- POST /api/credits/purchases - Apply a verified in-app purchase
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from pawmotion.api.dependencies import get_owner_id, get_purchase_verifier, get_uow_factory
from pawmotion.services.credits import ledger
from pawmotion.services.credits.purchases import apply_purchase
from pawmotion.services.credits.redeem import redeem_code
from pawmotion.services.exceptions import (
    CodeAlreadyUsedByOwner,
    CodeExhausted,
    CodeNotFound,
    PurchaseVerificationError,
    PurchaseVerificationUnavailable,
    RedeemCodeError,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/credits", tags=["credits"])


# Request/Response Models


class BalanceResponse(BaseModel):
    owner_id: str
    balance: int = Field(..., description="Available video credits", ge=0)


class LedgerEntryDTO(BaseModel):
    id: UUID
    delta: int = Field(..., description="Balance change (negative for debits)")
    reason: str
    related_job_id: UUID | None = None
    created_at: datetime


class RedeemRequest(BaseModel):
    code: str = Field(..., description="Redeem code (case-insensitive)", max_length=64)


class RedeemResponse(BaseModel):
    code: str
    credits_granted: int
    balance: int


class PurchaseRequest(BaseModel):
    receipt: str = Field(..., description="Opaque store receipt", min_length=1)


class PurchaseResponse(BaseModel):
    transaction_id: str
    credits_granted: int
    balance: int
    already_applied: bool = Field(
        ..., description="True if this transaction was credited by an earlier request"
    )


def _redeem_error_status(error: RedeemCodeError) -> int:
    if isinstance(error, CodeNotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (CodeExhausted, CodeAlreadyUsedByOwner)):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


# API Endpoints


@router.get("/balance", response_model=BalanceResponse, status_code=status.HTTP_200_OK)
async def get_balance(
    owner_id: str = Depends(get_owner_id),
    uow_factory=Depends(get_uow_factory),
) -> BalanceResponse:
    async with await uow_factory() as uow:
        current = await ledger.balance(uow, owner_id)
    return BalanceResponse(owner_id=owner_id, balance=current)


@router.get("/ledger", response_model=list[LedgerEntryDTO], status_code=status.HTTP_200_OK)
async def get_ledger(
    owner_id: str = Depends(get_owner_id),
    uow_factory=Depends(get_uow_factory),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[LedgerEntryDTO]:
    """Owner's ledger entries, newest first."""
    async with await uow_factory() as uow:
        entries = await ledger.history(uow, owner_id, offset=offset, limit=limit)
    return [
        LedgerEntryDTO(
            id=entry.id,
            delta=entry.delta,
            reason=entry.reason.value,
            related_job_id=entry.related_job_id,
            created_at=entry.created_at,
        )
        for entry in entries
    ]


@router.post("/redeem", response_model=RedeemResponse, status_code=status.HTTP_200_OK)
async def redeem(
    request: RedeemRequest,
    owner_id: str = Depends(get_owner_id),
    uow_factory=Depends(get_uow_factory),
) -> RedeemResponse:
    """Redeem a code for credits.

    Raises:
        HTTPException 400: Blank, inactive or expired code
        HTTPException 404: Unknown code
        HTTPException 409: Code exhausted or already redeemed by this owner
    """
    try:
        async with await uow_factory() as uow:
            result = await redeem_code(uow, owner_id, request.code)
    except RedeemCodeError as e:
        logger.info(
            "redeem.rejected", owner_id=owner_id, error_type=type(e).__name__, error=str(e)
        )
        raise HTTPException(status_code=_redeem_error_status(e), detail=e.user_message)

    return RedeemResponse(
        code=result.code, credits_granted=result.credits_granted, balance=result.balance
    )


@router.post("/purchases", response_model=PurchaseResponse, status_code=status.HTTP_200_OK)
async def apply_verified_purchase(
    request: PurchaseRequest,
    owner_id: str = Depends(get_owner_id),
    uow_factory=Depends(get_uow_factory),
    verifier=Depends(get_purchase_verifier),
) -> PurchaseResponse:
    """Verify a store receipt and credit the owner once per transaction.

    Raises:
        HTTPException 400: Receipt rejected by the verification service
        HTTPException 503: Verification service unavailable
    """
    try:
        purchase = await verifier.verify(owner_id, request.receipt)
    except PurchaseVerificationUnavailable as e:
        logger.warning("purchase.verification_unavailable", owner_id=owner_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.user_message)
    except PurchaseVerificationError as e:
        logger.warning("purchase.verification_failed", owner_id=owner_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.user_message)

    async with await uow_factory() as uow:
        result = await apply_purchase(uow, purchase)

    return PurchaseResponse(
        transaction_id=result.transaction_id,
        credits_granted=result.credits_granted,
        balance=result.balance,
        already_applied=result.already_applied,
    )
