"""HTTP API tests using httpx AsyncClient over ASGITransport.

Services are injected into app.state the same way the lifespan does.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from pawmotion.app import create_app, create_resilient_worker
from pawmotion.services.credits.purchases import PurchaseVerificationClient
from pawmotion.services.credits.redeem import create_code

OWNER = {"X-Owner-Id": "owner-1"}


def purchase_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"valid": True, "credits": 3, "transaction_id": "txn-api-1"})


@pytest_asyncio.fixture
async def test_client(uow_factory, session_factory, orchestrator, notifier):
    """Provide AsyncClient with test services injected into app.state."""
    app = create_app()
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.orchestrator = orchestrator
    app.state.notifier = notifier
    app.state.purchase_verifier = PurchaseVerificationClient(
        "https://verify.test", "secret", transport=httpx.MockTransport(purchase_handler)
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    await orchestrator.wait_for_pipelines()


@pytest.mark.asyncio
async def test_health(test_client):
    response = await test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_owner_header_is_required(test_client):
    response = await test_client.get("/api/credits/balance")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_generation_without_credits_is_402(test_client, pet_photo):
    response = await test_client.post(
        "/api/generations",
        json={"source_image_ref": pet_photo, "prompt": "dog runs"},
        headers=OWNER,
    )

    assert response.status_code == 402


@pytest.mark.asyncio
async def test_generation_lifecycle(test_client, fund_owner, pet_photo, orchestrator):
    """Scenario: funded owner starts a generation, then reads and lists it.

    Expected: 202 in uploading, processing after the pipeline, balance 0.
    """
    await fund_owner("owner-1", 1)

    response = await test_client.post(
        "/api/generations",
        json={"source_image_ref": pet_photo, "prompt": "dog runs", "pet_id": "pet-1"},
        headers=OWNER,
    )
    assert response.status_code == 202
    created = response.json()
    assert created["status"] == "uploading"
    assert created["pet_id"] == "pet-1"

    await orchestrator.wait_for_pipelines()

    response = await test_client.get(f"/api/generations/{created['id']}", headers=OWNER)
    assert response.status_code == 200
    assert response.json()["status"] == "processing"

    response = await test_client.get("/api/generations", params={"status": "processing"}, headers=OWNER)
    assert response.json()["total"] == 1

    response = await test_client.get("/api/credits/balance", headers=OWNER)
    assert response.json() == {"owner_id": "owner-1", "balance": 0}


@pytest.mark.asyncio
async def test_other_owners_job_is_404(test_client, fund_owner, pet_photo, orchestrator):
    await fund_owner("owner-1", 1)
    job = await orchestrator.request_generation("owner-1", pet_photo, "dog runs", background=False)

    response = await test_client.get(f"/api/generations/{job.id}", headers={"X-Owner-Id": "owner-2"})
    assert response.status_code == 404

    response = await test_client.post(
        f"/api/generations/{job.id}/cancel", headers={"X-Owner-Id": "owner-2"}
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_cancel_processing_job_sets_flag(test_client, fund_owner, pet_photo, orchestrator):
    await fund_owner("owner-1", 1)
    job = await orchestrator.request_generation("owner-1", pet_photo, "dog runs", background=False)

    response = await test_client.post(f"/api/generations/{job.id}/cancel", headers=OWNER)

    assert response.status_code == 200
    assert response.json()["status"] == "processing"


@pytest.mark.asyncio
async def test_redeem_status_codes(test_client, uow_factory):
    async with await uow_factory() as uow:
        await create_code(uow, "HELLO", credits_granted=2, max_uses=5)

    ok = await test_client.post("/api/credits/redeem", json={"code": "hello"}, headers=OWNER)
    repeat = await test_client.post("/api/credits/redeem", json={"code": "HELLO"}, headers=OWNER)
    missing = await test_client.post("/api/credits/redeem", json={"code": "NOPE"}, headers=OWNER)
    blank = await test_client.post("/api/credits/redeem", json={"code": " "}, headers=OWNER)

    assert ok.status_code == 200
    assert ok.json() == {"code": "HELLO", "credits_granted": 2, "balance": 2}
    assert repeat.status_code == 409
    assert missing.status_code == 404
    assert blank.status_code == 400


@pytest.mark.asyncio
async def test_purchase_is_applied_once(test_client):
    first = await test_client.post("/api/credits/purchases", json={"receipt": "r-1"}, headers=OWNER)
    second = await test_client.post("/api/credits/purchases", json={"receipt": "r-1"}, headers=OWNER)

    assert first.status_code == 200
    assert first.json()["already_applied"] is False
    assert second.json()["already_applied"] is True
    assert second.json()["balance"] == 3

    ledger = await test_client.get("/api/credits/ledger", headers=OWNER)
    assert [entry["reason"] for entry in ledger.json()] == ["purchase"]


@pytest.mark.asyncio
async def test_unsafe_owner_header_is_400(test_client):
    response = await test_client.get(
        "/api/credits/balance", headers={"X-Owner-Id": "../owner-2"}
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_photo_of_another_owner_is_400(test_client, fund_owner, tmp_path, uow_factory):
    """Scenario: owner-1 points the request at a photo staged by owner-2.

    Expected: 400, no job, the credit stays unspent.
    """
    other = tmp_path / "owner-2"
    other.mkdir()
    (other / "rex.jpg").write_bytes(b"\xff\xd8\xff\xe0" + b"\x00" * 64)
    await fund_owner("owner-1", 1)

    response = await test_client.post(
        "/api/generations",
        json={"source_image_ref": str(other / "rex.jpg"), "prompt": "dog runs"},
        headers=OWNER,
    )

    assert response.status_code == 400
    response = await test_client.get("/api/credits/balance", headers=OWNER)
    assert response.json()["balance"] == 1
    response = await test_client.get("/api/generations", headers=OWNER)
    assert response.json()["total"] == 0


@pytest.mark.asyncio
async def test_restarted_worker_is_stopped_on_shutdown():
    """Scenario: the poll worker crashes once and is restarted.

    Expected: stop() cancels the restarted task, not only the original one.
    """
    runs = []

    async def worker():
        runs.append(len(runs) + 1)
        if len(runs) == 1:
            raise RuntimeError("database unavailable")
        await asyncio.Event().wait()

    async def wait_for_restart():
        while len(runs) < 2:
            await asyncio.sleep(0)

    shutdown_event = asyncio.Event()
    handle = create_resilient_worker(worker, "video_poll", shutdown_event, restart_delay=0)
    first = handle.task
    await asyncio.wait_for(wait_for_restart(), timeout=1)
    restarted = handle.task

    shutdown_event.set()
    await handle.stop()

    assert restarted is not first
    assert restarted.cancelled()
