"""Credit ledger repository for PawMotion.

Provides data access for ledger entries and the per-owner ledger head row that
serializes balance-changing writes for a single owner.
"""

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from pawmotion.core.timezone import utcnow
from pawmotion.models.credit_ledger import CreditAccount, CreditLedgerEntry, LedgerReason


class CreditLedgerRepository:
    """Repository for CreditLedgerEntry and CreditAccount entities.

    Entries are append-only: there are no update or delete methods.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def lock_account(self, owner_id: str) -> bool:
        """Bump the owner's ledger version, holding the row lock until commit.

        A concurrent transaction doing the same for the same owner waits here
        until this one commits or rolls back; other owners are unaffected.

        Args:
            owner_id: Owner whose ledger is about to change

        Returns:
            True if the owner has a ledger head row, False otherwise
        """
        result = await self.session.execute(
            update(CreditAccount)
            .where(CreditAccount.owner_id == owner_id)  # type: ignore[arg-type]
            .values(ledger_version=CreditAccount.ledger_version + 1, updated_at=utcnow())
        )
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def ensure_account(self, owner_id: str) -> None:
        """Create the owner's ledger head row if missing, then lock it.

        Uses INSERT ... ON CONFLICT DO NOTHING so two first-time writers for
        the same owner do not fail on the primary key.
        """
        dialect = self.session.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        now = utcnow()
        stmt = (
            insert(CreditAccount)
            .values(owner_id=owner_id, ledger_version=0, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["owner_id"])
        )
        await self.session.execute(stmt)
        await self.lock_account(owner_id)

    async def get_balance(self, owner_id: str) -> int:
        """Sum of all ledger deltas for the owner (0 if none)."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0)).where(
                CreditLedgerEntry.owner_id == owner_id  # type: ignore[arg-type]
            )
        )
        return int(result.scalar() or 0)

    async def add_entry(self, entry: CreditLedgerEntry) -> CreditLedgerEntry:
        """Append a ledger entry.

        Args:
            entry: Entry to persist

        Returns:
            Persisted entry
        """
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_id(self, entry_id: UUID) -> CreditLedgerEntry | None:
        """Retrieve ledger entry by UUID."""
        result = await self.session.execute(
            select(CreditLedgerEntry).where(CreditLedgerEntry.id == entry_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_for_job(self, job_id: UUID, reason: LedgerReason) -> CreditLedgerEntry | None:
        """Retrieve the entry with the given reason for a job (at most one exists)."""
        result = await self.session.execute(
            select(CreditLedgerEntry).where(
                CreditLedgerEntry.related_job_id == job_id,  # type: ignore[arg-type]
                CreditLedgerEntry.reason == reason,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def get_by_reference(
        self, reason: LedgerReason, reference: str
    ) -> CreditLedgerEntry | None:
        """Retrieve the entry for an external reference (purchase transaction, redemption)."""
        result = await self.session.execute(
            select(CreditLedgerEntry).where(
                CreditLedgerEntry.reason == reason,  # type: ignore[arg-type]
                CreditLedgerEntry.reference == reference,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def list_by_owner(
        self, owner_id: str, offset: int = 0, limit: int = 50
    ) -> list[CreditLedgerEntry]:
        """Retrieve an owner's ledger entries, newest first."""
        result = await self.session.execute(
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.owner_id == owner_id)  # type: ignore[arg-type]
            .order_by(CreditLedgerEntry.created_at.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())
