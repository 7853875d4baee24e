"""Redeem code validation and application."""

from dataclasses import dataclass
from datetime import datetime

import structlog

from pawmotion.core.timezone import utcnow
from pawmotion.models.credit_ledger import LedgerReason
from pawmotion.models.redeem_code import RedeemCode, RedeemCodeUsage, normalize_code
from pawmotion.services.credits import ledger
from pawmotion.services.exceptions import (
    CodeAlreadyUsedByOwner,
    CodeExhausted,
    CodeExpired,
    CodeInactive,
    CodeNotFound,
    InvalidCode,
)
from pawmotion.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass
class RedeemResult:
    """Outcome of a successful redemption."""

    code: str
    credits_granted: int
    balance: int


async def redeem_code(
    uow: UnitOfWork, owner_id: str, raw_code: str, now: datetime | None = None
) -> RedeemResult:
    """Validate a redeem code and credit the owner, all in the caller's transaction.

    Steps (single transaction):
    1. Lock the owner's ledger head (serializes this owner's redemptions)
    2. Validate: exists, active, not expired, uses left, not used by this owner
    3. Consume one use (conditional increment, never past max_uses)
    4. Record the per-owner usage row
    5. Credit the owner

    Args:
        uow: Active unit of work
        owner_id: Owner redeeming the code
        raw_code: Code as typed by the user (case and whitespace insensitive)
        now: Current time (default: utcnow)

    Returns:
        RedeemResult with credits granted and the new balance

    Raises:
        InvalidCode: Blank code
        CodeNotFound, CodeInactive, CodeExpired, CodeExhausted, CodeAlreadyUsedByOwner
    """
    code = normalize_code(raw_code or "")
    if not code:
        raise InvalidCode("Redeem code is blank")

    now = now or utcnow()
    await uow.ledger.ensure_account(owner_id)

    redeem = await uow.redeem_codes.get_by_code(code)
    if redeem is None:
        raise CodeNotFound(f"Redeem code {code} not found")
    if not redeem.is_active:
        raise CodeInactive(f"Redeem code {code} is inactive")
    if redeem.is_expired(now):
        raise CodeExpired(f"Redeem code {code} expired at {redeem.expires_at}")
    if await uow.redeem_codes.has_usage(code, owner_id):
        raise CodeAlreadyUsedByOwner(f"Owner {owner_id} already redeemed {code}")
    if redeem.remaining_uses == 0:
        raise CodeExhausted(f"Redeem code {code} has no uses left")
    if not await uow.redeem_codes.increment_uses(code):
        # Another owner took the last use between the read and the update
        raise CodeExhausted(f"Redeem code {code} has no uses left")

    await uow.redeem_codes.add_usage(RedeemCodeUsage(code=code, owner_id=owner_id, used_at=now))
    await ledger.credit(
        uow,
        owner_id,
        redeem.credits_granted,
        LedgerReason.REDEEM_CODE,
        reference=f"{code}:{owner_id}",
    )
    new_balance = await ledger.balance(uow, owner_id)

    logger.info(
        "redeem.applied",
        owner_id=owner_id,
        code=code,
        credits_granted=redeem.credits_granted,
        balance=new_balance,
    )
    return RedeemResult(code=code, credits_granted=redeem.credits_granted, balance=new_balance)


async def create_code(
    uow: UnitOfWork,
    code: str,
    credits_granted: int,
    max_uses: int,
    description: str = "",
    expires_at: datetime | None = None,
) -> RedeemCode:
    """Create a new active redeem code.

    Raises:
        InvalidCode: If the code is blank
        ValueError: If credits_granted or max_uses is not positive
    """
    normalized = normalize_code(code)
    if not normalized:
        raise InvalidCode("Redeem code is blank")
    if credits_granted <= 0 or max_uses <= 0:
        raise ValueError("credits_granted and max_uses must be positive")

    redeem = await uow.redeem_codes.add(
        RedeemCode(
            code=normalized,
            description=description,
            credits_granted=credits_granted,
            max_uses=max_uses,
            expires_at=expires_at,
        )
    )
    logger.info(
        "redeem.code_created",
        code=normalized,
        credits_granted=credits_granted,
        max_uses=max_uses,
        expires_at=expires_at.isoformat() if expires_at else None,
    )
    return redeem
