"""
Pydantic response models for service layer.

Provides clean separation between service logic and HTTP concerns.
Attributes are snake_case; `serialization_alias` gives the camelCase wire
names, which FastAPI emits by default.
"""

from pydantic import BaseModel, Field


class PayoutCreateResponse(BaseModel):
    """
    Envelope returned by payout creation, success or failure.

    status: 1 accepted for processing, 2 rejected
    code:   0 ok, 400 validation, 503 no operators, 500 internal
    """

    external_id: str = Field("", description="Transaction identifier ('' if nothing was persisted)")
    status: int = Field(..., description="1 accepted, 2 rejected")
    reason: str = Field("", description="Human-readable failure reason")
    code: int = Field(0, description="0 ok, 400 validation, 503 no operators, 500 internal")


class PayoutStatusResponse(BaseModel):
    """Coarse payout status for callers"""

    client_unique_id: str = Field(..., serialization_alias="clientUniqueId")
    status: int = Field(..., description="1 in progress, 2 completed, 3 failed")
    amount: float
    amount_paid: float = Field(0, serialization_alias="amountPaid")
    receipt: str = ""
    reason: str = ""
    code: int = 0
    screenshot: str = Field("", description="Proof filename once completed")


class PayoutCancelResponse(BaseModel):
    client_unique_id: str = Field(..., serialization_alias="clientUniqueId")
    status: int
    state: str


class RateResponse(BaseModel):
    rate: float
    timestamp: int = Field(..., description="Unix milliseconds of the last update")


class BalanceResponse(BaseModel):
    total: float = Field(..., description="Sum of all user balances")
    users: int = Field(..., description="Number of registered users")
