"""
Exchange rate and balance routes.
"""

import logging

from fastapi import APIRouter, Depends, Request

from app.core.container import get_payout_store, get_rate_aggregator
from app.core.exceptions import DatabaseError
from app.core.limiter import api_limit, limiter
from app.schemas.responses import BalanceResponse, RateResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/rate", response_model=RateResponse)
@limiter.limit(api_limit)
async def get_rate(request: Request, rates=Depends(get_rate_aggregator)):
    """
    Latest consensus rate.

    Raises NotFoundError (404) automatically via exception handler
    if no rate has been stored yet.
    """
    rate, timestamp = await rates.get_rate()
    return RateResponse(rate=rate, timestamp=timestamp)


@router.get("/balance", response_model=BalanceResponse)
@limiter.limit(api_limit)
async def get_balance(request: Request, store=Depends(get_payout_store)):
    """Sum of all user balances."""
    try:
        total, users = await store.total_operator_balance()
    except Exception as e:
        logger.error("Failed to aggregate balances", exc_info=True)
        raise DatabaseError("Failed to retrieve balances", operation="total_operator_balance") from e
    return BalanceResponse(total=total, users=users)
