"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from pawmotion.models.credit_ledger import CreditAccount, CreditLedgerEntry, LedgerReason
from pawmotion.models.generation_job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    FailureReason,
    GenerationJob,
    InvalidStateTransition,
    JobStatus,
)
from pawmotion.models.redeem_code import RedeemCode, RedeemCodeUsage, normalize_code

__all__ = [
    "GenerationJob",
    "JobStatus",
    "FailureReason",
    "InvalidStateTransition",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "CreditLedgerEntry",
    "CreditAccount",
    "LedgerReason",
    "RedeemCode",
    "RedeemCodeUsage",
    "normalize_code",
]
