"""Repository layer for PawMotion.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from pawmotion.repositories.credit_ledger import CreditLedgerRepository
from pawmotion.repositories.generation_job import GenerationJobRepository
from pawmotion.repositories.redeem_code import RedeemCodeRepository

__all__ = [
    "GenerationJobRepository",
    "CreditLedgerRepository",
    "RedeemCodeRepository",
]
