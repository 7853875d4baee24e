"""RedeemCode entities - finite-use promotional credit grants."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import Field, SQLModel

from pawmotion.core.timezone import utcnow


def normalize_code(code: str) -> str:
    """Case-normalize a redeem code (trimmed, upper-case)."""
    return code.strip().upper()


class RedeemCode(SQLModel, table=True):
    """RedeemCode grants `credits_granted` credits, at most once per owner."""

    __tablename__ = "redeem_codes"  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint("current_uses <= max_uses", name="ck_redeem_codes_uses_within_max"),
    )

    code: str = Field(primary_key=True, max_length=64)
    description: str = Field(default="", max_length=255)
    credits_granted: int = Field(gt=0)
    max_uses: int = Field(gt=0)
    current_uses: int = Field(default=0, ge=0)
    is_active: bool = Field(default=True)
    expires_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    @property
    def remaining_uses(self) -> int:
        return max(0, self.max_uses - self.current_uses)


class RedeemCodeUsage(SQLModel, table=True):
    """Join record proving an owner redeemed a code."""

    __tablename__ = "redeem_code_usages"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("code", "owner_id", name="uq_redeem_usage_code_owner"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    code: str = Field(foreign_key="redeem_codes.code", max_length=64, index=True)
    owner_id: str = Field(max_length=128, index=True)
    used_at: datetime = Field(default_factory=utcnow)
