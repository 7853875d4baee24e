"""Credit ledger entities - append-only balance changes and per-owner ledger heads."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from pawmotion.core.timezone import utcnow


class LedgerReason(str, Enum):
    """Why a ledger entry changed the owner's balance."""

    PURCHASE = "purchase"
    REDEEM_CODE = "redeem_code"
    GENERATION_DEBIT = "generation_debit"
    GENERATION_REFUND = "generation_refund"


class CreditLedgerEntry(SQLModel, table=True):
    """Immutable audit record of one balance change.

    The owner's balance is the sum of `delta` over all of their entries.
    Rows are never updated or deleted.
    """

    __tablename__ = "credit_ledger_entries"  # type: ignore[assignment]
    __table_args__ = (
        # One debit and at most one refund per job
        UniqueConstraint("related_job_id", "reason", name="uq_ledger_job_reason"),
        # A purchase transaction or redemption is applied once
        UniqueConstraint("reason", "reference", name="uq_ledger_reason_reference"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=128, index=True)
    delta: int
    reason: LedgerReason = Field(index=True)
    related_job_id: Optional[UUID] = Field(default=None, index=True)
    reference: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utcnow)


class CreditAccount(SQLModel, table=True):
    """Per-owner ledger head used to serialize ledger writes for one owner.

    Holds a version counter only; the balance is always derived from entries.
    """

    __tablename__ = "credit_accounts"  # type: ignore[assignment]

    owner_id: str = Field(primary_key=True, max_length=128)
    ledger_version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
