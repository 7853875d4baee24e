"""Purchase verification and application tests.

Uses httpx.MockTransport in place of the verification service.
"""

import httpx
import pytest

from pawmotion.services.credits.purchases import (
    PurchaseVerificationClient,
    VerifiedPurchase,
    apply_purchase,
)
from pawmotion.services.exceptions import (
    PurchaseVerificationError,
    PurchaseVerificationUnavailable,
)


def verifier_returning(status_code: int, body: dict | None = None) -> PurchaseVerificationClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/verify"
        assert request.headers["Authorization"] == "Bearer secret"
        return httpx.Response(status_code, json=body or {})

    return PurchaseVerificationClient(
        "https://verify.test", "secret", transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_verify_valid_receipt():
    client = verifier_returning(200, {"valid": True, "credits": 5, "transaction_id": "txn-9"})

    purchase = await client.verify("owner-1", "receipt-data")

    assert purchase == VerifiedPurchase(owner_id="owner-1", credits_granted=5, transaction_id="txn-9")


@pytest.mark.asyncio
async def test_verify_rejected_receipt():
    client = verifier_returning(200, {"valid": False, "reason": "refunded"})

    with pytest.raises(PurchaseVerificationError):
        await client.verify("owner-1", "receipt-data")


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 401, 422])
async def test_verify_client_errors_are_permanent(status_code):
    with pytest.raises(PurchaseVerificationError):
        await verifier_returning(status_code).verify("owner-1", "receipt-data")


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_verify_server_errors_are_transient(status_code):
    with pytest.raises(PurchaseVerificationUnavailable):
        await verifier_returning(status_code).verify("owner-1", "receipt-data")


@pytest.mark.asyncio
async def test_verify_network_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = PurchaseVerificationClient(
        "https://verify.test", "secret", transport=httpx.MockTransport(handler)
    )

    with pytest.raises(PurchaseVerificationUnavailable):
        await client.verify("owner-1", "receipt-data")


@pytest.mark.asyncio
async def test_replayed_purchase_is_credited_once(uow_factory):
    """Scenario: the same verified transaction is applied twice.

    Expected: balance grows once, second result reports already_applied.
    """
    purchase = VerifiedPurchase(owner_id="owner-1", credits_granted=10, transaction_id="txn-1")

    async with await uow_factory() as uow:
        first = await apply_purchase(uow, purchase)
    async with await uow_factory() as uow:
        second = await apply_purchase(uow, purchase)

    assert first.balance == 10
    assert first.already_applied is False
    assert second.balance == 10
    assert second.already_applied is True
