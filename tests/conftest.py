"""pytest fixtures for PawMotion tests.

Provides:
- postgres_container: Session-scoped testcontainer PostgreSQL instance
  (only when PAWMOTION_TEST_POSTGRES=1, otherwise None)
- engine: Function-scoped engine (fresh SQLite file per test, or the shared
  PostgreSQL container with table cleanup)
- session / session_factory / uow_factory: Database access for tests
- fake collaborators: video provider, object storage, no-op sleep
"""

import os
import subprocess
import sys
from pathlib import Path
from typing import AsyncGenerator
from uuid import uuid4

# Settings validation is skipped in the test environment
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from testcontainers.postgres import PostgresContainer

from pawmotion.core.database import create_engine, create_schema
from pawmotion.models.credit_ledger import LedgerReason
from pawmotion.services.credits import ledger
from pawmotion.services.notifier import JobNotifier
from pawmotion.services.retry import RetryPolicy
from pawmotion.services.storage.upload_gateway import UploadGateway
from pawmotion.services.video_generation.orchestrator import GenerationOrchestrator
from pawmotion.services.video_generation.polling import PollPolicy
from pawmotion.services.video_generation.providers import ProviderTaskState, TaskStatus
from pawmotion.services.video_generation.reconciler import StateReconciler
from pawmotion.services.video_generation.submitter import JobSubmitter
from pawmotion.uow import create_uow_factory

ROOT = Path(__file__).resolve().parent.parent
USE_POSTGRES = os.environ.get("PAWMOTION_TEST_POSTGRES") == "1"

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00\x10JFIF" + b"\x00" * 256


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Skipped (None) unless PAWMOTION_TEST_POSTGRES=1. Migrations are applied
    using a subprocess to avoid asyncio event loop conflicts.
    """
    if not USE_POSTGRES:
        yield None
        return

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_pawmotion",
    ) as container:
        env = os.environ.copy()
        env["DATABASE_URL"] = container.get_connection_url(driver="psycopg")

        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=ROOT,
        )

        yield container


@pytest_asyncio.fixture(scope="function")
async def engine(postgres_container, tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Provide a function-scoped engine with empty tables."""
    if postgres_container is None:
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'pawmotion-test.db'}")
        await create_schema(engine)
        yield engine
        await engine.dispose()
        return

    engine = create_engine(postgres_container.get_connection_url(driver="psycopg"), pool_size=10)
    yield engine

    # Truncate all tables for test isolation (dependent tables first)
    async with engine.begin() as conn:
        await conn.execute(text("DELETE FROM redeem_code_usages"))
        await conn.execute(text("DELETE FROM redeem_codes"))
        await conn.execute(text("DELETE FROM credit_ledger_entries"))
        await conn.execute(text("DELETE FROM credit_accounts"))
        await conn.execute(text("DELETE FROM generation_jobs"))
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session (rolled back after the test)."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


# Fake collaborators


class FakeVideoProvider:
    """Scripted video provider.

    create_errors are raised (in order) before create_task succeeds.
    statuses[task_id] is consumed one item per poll; the last item repeats.
    """

    def __init__(self):
        self.created: list[tuple[str, str, str | None]] = []
        self.create_errors: list[Exception] = []
        self.statuses: dict[str, list[TaskStatus | Exception]] = {}
        self.status_calls: list[str] = []

    async def create_task(self, image_url: str, prompt: str, style: str | None) -> str:
        self.created.append((image_url, prompt, style))
        if self.create_errors:
            raise self.create_errors.pop(0)
        return f"task-{len(self.created)}"

    async def get_task_status(self, task_id: str) -> TaskStatus:
        self.status_calls.append(task_id)
        script = self.statuses.get(task_id) or [TaskStatus(status=ProviderTaskState.RUNNING)]
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeStorageClient:
    """In-memory object storage; put_errors are raised (in order) before success."""

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.put_errors: list[Exception] = []
        self.put_calls = 0

    async def put_object(self, path: str, data: bytes, content_type: str) -> str:
        self.put_calls += 1
        if self.put_errors:
            raise self.put_errors.pop(0)
        self.objects[path] = (data, content_type)
        return f"https://storage.test/{path}"


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays and returns immediately."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_provider() -> FakeVideoProvider:
    return FakeVideoProvider()


@pytest.fixture
def fake_storage() -> FakeStorageClient:
    return FakeStorageClient()


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def notifier() -> JobNotifier:
    return JobNotifier()


@pytest.fixture
def poll_policy() -> PollPolicy:
    return PollPolicy(
        initial_delay=5.0, factor=1.5, max_delay=60.0, max_attempts=10, timeout_seconds=1800
    )


@pytest.fixture
def reconciler(uow_factory, notifier, poll_policy) -> StateReconciler:
    return StateReconciler(uow_factory, notifier, poll_policy=poll_policy, credit_cost=1)


@pytest.fixture
def upload_gateway(fake_storage, no_sleep, tmp_path) -> UploadGateway:
    return UploadGateway(
        fake_storage,  # type: ignore[arg-type]
        folder="source-images",
        allowed_formats=["jpeg", "png", "webp", "heic"],
        max_bytes=1024 * 1024,
        retry_policy=RetryPolicy(),
        sleep=no_sleep,
        source_root=tmp_path,
    )


@pytest.fixture
def orchestrator(uow_factory, reconciler, upload_gateway, fake_provider, no_sleep):
    return GenerationOrchestrator(
        uow_factory,
        reconciler,
        upload_gateway,
        JobSubmitter(fake_provider, retry_policy=RetryPolicy(), sleep=no_sleep),
    )


@pytest.fixture
def owner_dir(tmp_path):
    """Staging directory of owner-1 (tmp_path is the source image root)."""
    path = tmp_path / "owner-1"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def pet_photo(owner_dir) -> str:
    """Path of a small JPEG in owner-1's staging directory."""
    path = owner_dir / "pet.jpg"
    path.write_bytes(JPEG_BYTES)
    return str(path)


@pytest.fixture
def fund_owner(uow_factory):
    """Return helper that grants credits to an owner via a purchase entry."""

    async def _fund(owner_id: str, credits: int) -> None:
        async with await uow_factory() as uow:
            await ledger.credit(
                uow, owner_id, credits, LedgerReason.PURCHASE, reference=f"txn-{uuid4()}"
            )

    return _fund
