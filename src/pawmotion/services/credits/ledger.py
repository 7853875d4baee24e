"""Credit ledger operations: atomic debit, idempotent credit, derived balance.

All functions run inside the caller's UnitOfWork so a debit can commit together
with the job it funds, and a refund together with the job's failure.

Serialization model:
    Every balance-changing write first bumps the owner's `credit_accounts` row
    (an UPDATE that holds the row lock until the transaction ends), then reads
    the balance and inserts the new entry. Two debits for the same owner
    therefore run one after the other and the second one sees the first one's
    entry; debits for different owners never touch the same row.
"""

from uuid import UUID

import structlog

from pawmotion.models.credit_ledger import CreditLedgerEntry, LedgerReason
from pawmotion.services.exceptions import InsufficientBalance, LedgerError
from pawmotion.uow import UnitOfWork

logger = structlog.get_logger(__name__)

CREDIT_REASONS = (
    LedgerReason.PURCHASE,
    LedgerReason.REDEEM_CODE,
    LedgerReason.GENERATION_REFUND,
)


async def debit(uow: UnitOfWork, owner_id: str, amount: int, related_job_id: UUID) -> UUID:
    """Consume `amount` credits for a generation job.

    Args:
        uow: Active unit of work (the debit commits with it)
        owner_id: Owner whose balance is debited
        amount: Number of credits to consume (positive)
        related_job_id: Job funded by this debit

    Returns:
        Id of the ledger entry (the job's credit transaction id)

    Raises:
        ValueError: If amount is not positive
        InsufficientBalance: If the balance would drop below zero
    """
    if amount <= 0:
        raise ValueError("Debit amount must be positive")

    if not await uow.ledger.lock_account(owner_id):
        # No ledger head means nothing was ever credited
        logger.info("ledger.debit.rejected", owner_id=owner_id, balance=0, requested=amount)
        raise InsufficientBalance(owner_id, 0, amount)

    existing = await uow.ledger.get_for_job(related_job_id, LedgerReason.GENERATION_DEBIT)
    if existing is not None:
        logger.info("ledger.debit.duplicate", owner_id=owner_id, job_id=str(related_job_id))
        return existing.id

    current = await uow.ledger.get_balance(owner_id)
    if current - amount < 0:
        logger.info(
            "ledger.debit.rejected", owner_id=owner_id, balance=current, requested=amount
        )
        raise InsufficientBalance(owner_id, current, amount)

    entry = await uow.ledger.add_entry(
        CreditLedgerEntry(
            owner_id=owner_id,
            delta=-amount,
            reason=LedgerReason.GENERATION_DEBIT,
            related_job_id=related_job_id,
        )
    )
    logger.info(
        "ledger.debit.applied",
        owner_id=owner_id,
        job_id=str(related_job_id),
        amount=amount,
        balance_after=current - amount,
        transaction_id=str(entry.id),
    )
    return entry.id


async def credit(
    uow: UnitOfWork,
    owner_id: str,
    amount: int,
    reason: LedgerReason,
    related_job_id: UUID | None = None,
    reference: str | None = None,
) -> CreditLedgerEntry:
    """Add credits to an owner's balance, at most once per job/reason or reference.

    A repeat call for the same `(related_job_id, reason)` or `(reason, reference)`
    returns the entry recorded the first time and changes nothing.

    Args:
        uow: Active unit of work
        owner_id: Owner whose balance is credited
        amount: Number of credits to add (positive)
        reason: purchase, redeem_code or generation_refund
        related_job_id: Job being refunded (required for generation_refund)
        reference: External identity of the grant (purchase transaction id, redemption)

    Returns:
        The ledger entry holding this credit

    Raises:
        ValueError: If amount is not positive or reason is not a credit reason
        LedgerError: If a refund is requested without a job id
    """
    if amount <= 0:
        raise ValueError("Credit amount must be positive")
    if reason not in CREDIT_REASONS:
        raise ValueError(f"{reason.value} is not a credit reason")
    if reason == LedgerReason.GENERATION_REFUND and related_job_id is None:
        raise LedgerError("generation_refund requires related_job_id")

    await uow.ledger.ensure_account(owner_id)

    existing = None
    if related_job_id is not None:
        existing = await uow.ledger.get_for_job(related_job_id, reason)
    if existing is None and reference is not None:
        existing = await uow.ledger.get_by_reference(reason, reference)
    if existing is not None:
        logger.info(
            "ledger.credit.duplicate",
            owner_id=owner_id,
            reason=reason.value,
            job_id=str(related_job_id) if related_job_id else None,
            reference=reference,
        )
        return existing

    entry = await uow.ledger.add_entry(
        CreditLedgerEntry(
            owner_id=owner_id,
            delta=amount,
            reason=reason,
            related_job_id=related_job_id,
            reference=reference,
        )
    )
    logger.info(
        "ledger.credit.applied",
        owner_id=owner_id,
        reason=reason.value,
        amount=amount,
        job_id=str(related_job_id) if related_job_id else None,
        transaction_id=str(entry.id),
    )
    return entry


async def balance(uow: UnitOfWork, owner_id: str) -> int:
    """Current balance, derived from the owner's ledger entries."""
    return await uow.ledger.get_balance(owner_id)


async def history(
    uow: UnitOfWork, owner_id: str, offset: int = 0, limit: int = 50
) -> list[CreditLedgerEntry]:
    """Owner's ledger entries for auditing, newest first."""
    return await uow.ledger.list_by_owner(owner_id, offset=offset, limit=limit)
