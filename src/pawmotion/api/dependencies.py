"""FastAPI dependencies for request context and shared services.

This module provides reusable FastAPI dependencies for:
- Owner identity (trusted X-Owner-Id header set by the upstream identity provider)
- Application services stored on app.state during lifespan startup
"""

from typing import Annotated

from fastapi import Header, HTTPException, Request, status

from pawmotion.services.credits.purchases import PurchaseVerificationClient
from pawmotion.services.notifier import JobNotifier
from pawmotion.services.storage.upload_gateway import is_safe_path_segment
from pawmotion.services.video_generation.orchestrator import GenerationOrchestrator
from pawmotion.uow import UnitOfWorkFactory


def get_owner_id(x_owner_id: Annotated[str | None, Header()] = None) -> str:
    """Read the authenticated owner id forwarded by the identity provider.

    Raises:
        HTTPException: 401 Unauthorized if the header is missing or blank
        HTTPException: 400 Bad Request if the id is not a single safe path segment
    """
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Owner-Id header"
        )
    owner_id = x_owner_id.strip()
    if not is_safe_path_segment(owner_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-Owner-Id header"
        )
    return owner_id


def get_uow_factory(request: Request) -> UnitOfWorkFactory:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.ledger.get_balance(owner_id)
    """
    return request.app.state.uow_factory


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def get_notifier(request: Request) -> JobNotifier:
    return request.app.state.notifier


def get_purchase_verifier(request: Request) -> PurchaseVerificationClient:
    return request.app.state.purchase_verifier
