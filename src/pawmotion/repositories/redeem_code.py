"""RedeemCode repository for PawMotion."""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pawmotion.models.redeem_code import RedeemCode, RedeemCodeUsage


class RedeemCodeRepository:
    """Repository for RedeemCode and RedeemCodeUsage entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, code: RedeemCode) -> RedeemCode:
        self.session.add(code)
        await self.session.flush()
        return code

    async def get_by_code(self, code: str) -> RedeemCode | None:
        """Retrieve redeem code by its normalized value."""
        result = await self.session.execute(select(RedeemCode).where(RedeemCode.code == code))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def has_usage(self, code: str, owner_id: str) -> bool:
        """Check whether the owner already redeemed the code."""
        result = await self.session.execute(
            select(RedeemCodeUsage.id).where(
                RedeemCodeUsage.code == code,  # type: ignore[arg-type]
                RedeemCodeUsage.owner_id == owner_id,  # type: ignore[arg-type]
            )
        )
        return result.first() is not None

    async def increment_uses(self, code: str) -> bool:
        """Conditionally consume one use of the code.

        Query explanation:
        - WHERE current_uses < max_uses: Never exceed the cap, even under races
        - SET current_uses = current_uses + 1: Atomic increment in the database

        Returns:
            True if a use was consumed, False if the code is exhausted
        """
        result = await self.session.execute(
            update(RedeemCode)
            .where(
                RedeemCode.code == code,  # type: ignore[arg-type]
                RedeemCode.current_uses < RedeemCode.max_uses,  # type: ignore[arg-type,operator]
            )
            .values(current_uses=RedeemCode.current_uses + 1)
        )
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def add_usage(self, usage: RedeemCodeUsage) -> RedeemCodeUsage:
        self.session.add(usage)
        await self.session.flush()
        return usage
