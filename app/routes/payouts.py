"""
Payout API routes.

Create and status keep the merchant-facing envelope ({status, reason, code})
on failure as well as success; other errors fall through to the generic
BaseAppError handler.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from app.core.container import get_payout_service, get_payout_store, get_proof_storage
from app.core.exceptions import (
    BaseAppError,
    NoOperatorsAvailableError,
    NotFoundError,
    PayoutValidationError,
)
from app.core.limiter import api_limit, limiter, payout_limit
from app.schemas.payout import PayoutCancelRequest, PayoutCreateRequest, PayoutStatusRequest
from app.schemas.responses import PayoutCancelResponse, PayoutCreateResponse, PayoutStatusResponse
from app.security import verify_private_token
from app.services.proof_storage import content_type_for
from app.services.state_machine import coarse_status

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_private_token)])

STATUS_ACCEPTED = 1
STATUS_REJECTED = 2


def _create_envelope(status_code: int, reason: str, external_id: str = "") -> JSONResponse:
    body = PayoutCreateResponse(
        external_id=external_id, status=STATUS_REJECTED, reason=reason, code=status_code
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.post("/payout/create", response_model=PayoutCreateResponse)
@limiter.limit(payout_limit)
async def create_payout(
    request: Request,
    payload: PayoutCreateRequest,
    service=Depends(get_payout_service),
):
    """Create a payout and announce it to eligible operators."""
    try:
        transaction = await service.create(payload)
    except PayoutValidationError as e:
        return _create_envelope(400, e.message)
    except NoOperatorsAvailableError as e:
        return _create_envelope(503, e.message, external_id=e.tx_id)
    except BaseAppError as e:
        logger.error(f"Payout creation failed: {e.message}")
        return _create_envelope(500, "Internal server error")

    return PayoutCreateResponse(external_id=transaction.tx_id, status=STATUS_ACCEPTED, reason="", code=0)


@router.post("/payout/status")
@limiter.limit(api_limit)
async def payout_status(
    request: Request,
    payload: PayoutStatusRequest,
    service=Depends(get_payout_service),
):
    """Coarse status of a payout: 1 in progress, 2 completed, 3 failed."""
    try:
        return await service.get_status(payload.client_unique_id)
    except NotFoundError:
        body = PayoutStatusResponse(
            client_unique_id=payload.client_unique_id,
            status=3,
            amount=0,
            reason="Transaction not found",
            code=404,
        )
        return JSONResponse(status_code=404, content=body.model_dump(by_alias=True))


@router.post("/payout/cancel", response_model=PayoutCancelResponse)
@limiter.limit(payout_limit)
async def cancel_payout(
    request: Request,
    payload: PayoutCancelRequest,
    service=Depends(get_payout_service),
):
    """
    Cancel a payout that has not reached a terminal state.

    Raises NotFoundError (404) or StaleStateError (409) through the
    exception handler.
    """
    if payload.reason:
        transaction = await service.cancel(payload.client_unique_id, reason=payload.reason)
    else:
        transaction = await service.cancel(payload.client_unique_id)
    return PayoutCancelResponse(
        client_unique_id=transaction.tx_id,
        status=coarse_status(transaction.status),
        state=transaction.status,
    )


@router.get("/payout/screenshot/{filename}")
@limiter.limit(api_limit)
async def get_screenshot(
    request: Request,
    filename: str,
    storage=Depends(get_proof_storage),
    store=Depends(get_payout_store),
):
    """Serve a proof image, only if a Proof row ties it to its transaction."""
    path, tx_id = storage.resolve(filename)

    proof = await store.get_proof_by_path(filename, tx_id)
    if proof is None:
        raise NotFoundError("Screenshot record", filename)

    content = await storage.read(path)
    return Response(
        content=content,
        media_type=content_type_for(filename),
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )
