"""In-app purchase verification and credit grants.

Payment capture happens upstream; this module only asks the verification
service whether a receipt is genuine and credits the owner once per
transaction.
"""

from dataclasses import dataclass

import httpx
import structlog

from pawmotion.models.credit_ledger import LedgerReason
from pawmotion.services.credits import ledger
from pawmotion.services.exceptions import (
    PurchaseVerificationError,
    PurchaseVerificationUnavailable,
)
from pawmotion.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass
class VerifiedPurchase:
    """Purchase confirmed by the verification service."""

    owner_id: str
    credits_granted: int
    transaction_id: str


@dataclass
class PurchaseResult:
    transaction_id: str
    credits_granted: int
    balance: int
    already_applied: bool


class PurchaseVerificationClient:
    """HTTP client for the receipt verification service."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize verification client.

        Args:
            base_url: Verification service base URL (PURCHASE_VERIFICATION_URL)
            api_key: Service API key (PURCHASE_VERIFICATION_KEY)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def verify(self, owner_id: str, receipt: str) -> VerifiedPurchase:
        """Verify a store receipt for the owner.

        Args:
            owner_id: Owner claiming the purchase
            receipt: Opaque store receipt

        Returns:
            VerifiedPurchase with credits to grant and the store transaction id

        Raises:
            PurchaseVerificationUnavailable: Timeout, rate limit or 5xx
            PurchaseVerificationError: Receipt rejected or response malformed
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/verify",
                    headers=self.headers,
                    json={"owner_id": owner_id, "receipt": receipt},
                )
        except httpx.TimeoutException as e:
            raise PurchaseVerificationUnavailable(
                f"Verification timeout after {self.timeout}s: {str(e)}"
            )
        except httpx.HTTPError as e:
            raise PurchaseVerificationUnavailable(f"Network error: {str(e)}")

        if response.status_code in (408, 429) or response.status_code >= 500:
            raise PurchaseVerificationUnavailable(
                f"Verification unavailable ({response.status_code}): {response.text}"
            )
        if response.status_code >= 400:
            raise PurchaseVerificationError(
                f"Receipt rejected ({response.status_code}): {response.text}"
            )

        try:
            body = response.json()
            if not body.get("valid"):
                raise PurchaseVerificationError(f"Receipt not valid: {body.get('reason', '')}")
            purchase = VerifiedPurchase(
                owner_id=owner_id,
                credits_granted=int(body["credits"]),
                transaction_id=str(body["transaction_id"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise PurchaseVerificationError(f"Malformed verification response: {str(e)}")

        if purchase.credits_granted <= 0 or not purchase.transaction_id:
            raise PurchaseVerificationError("Verification returned no credits")
        return purchase


async def apply_purchase(uow: UnitOfWork, purchase: VerifiedPurchase) -> PurchaseResult:
    """Credit a verified purchase once per store transaction.

    A replayed receipt resolves to the same transaction id and leaves the
    balance unchanged.

    Args:
        uow: Active unit of work
        purchase: Result of PurchaseVerificationClient.verify

    Returns:
        PurchaseResult with the owner's balance after the grant
    """
    await uow.ledger.ensure_account(purchase.owner_id)
    existing = await uow.ledger.get_by_reference(LedgerReason.PURCHASE, purchase.transaction_id)

    if existing is None:
        await ledger.credit(
            uow,
            purchase.owner_id,
            purchase.credits_granted,
            LedgerReason.PURCHASE,
            reference=purchase.transaction_id,
        )
    else:
        logger.info(
            "purchase.replayed",
            owner_id=purchase.owner_id,
            transaction_id=purchase.transaction_id,
        )

    new_balance = await ledger.balance(uow, purchase.owner_id)
    logger.info(
        "purchase.applied",
        owner_id=purchase.owner_id,
        transaction_id=purchase.transaction_id,
        credits_granted=purchase.credits_granted,
        balance=new_balance,
        already_applied=existing is not None,
    )
    return PurchaseResult(
        transaction_id=purchase.transaction_id,
        credits_granted=purchase.credits_granted,
        balance=new_balance,
        already_applied=existing is not None,
    )
