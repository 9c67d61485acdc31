"""
Pydantic schemas for payout requests.

Field names on the wire are camelCase for compatibility with existing
merchant integrations; Python code uses the snake_case attribute names.
Business rules (amount bounds, supported methods, deadline ordering) are
enforced by PayoutService so their failures map onto the payout response
envelope instead of a generic 422.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PayoutCreateRequest(BaseModel):
    """Schema for POST /api/payout/create"""

    model_config = ConfigDict(populate_by_name=True)

    destination: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Card number, phone or account the payout goes to",
    )

    amount: Decimal = Field(
        ...,
        gt=0,
        max_digits=14,
        decimal_places=2,
        description="Payout amount in the service currency",
    )

    wallet_id: str = Field(
        ...,
        alias="walletId",
        min_length=1,
        max_length=32,
        description="Payment method, e.g. 'sbp' or 'sberbank'",
    )

    expired_time: int = Field(
        ...,
        alias="expiredTime",
        description="Unix seconds when the payout became available",
    )

    expired_offer_time: int = Field(
        ...,
        alias="expiredOfferTime",
        description="Unix seconds after which the payout expires",
    )

    sbp_bank: Optional[str] = Field(None, max_length=64, description="Receiving bank for SBP payouts")

    callback_url: Optional[str] = Field(
        None,
        max_length=2048,
        description="Where terminal status notifications are POSTed",
    )

    @field_validator("destination")
    @classmethod
    def strip_destination(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Destination cannot be blank")
        return v

    @field_validator("callback_url")
    @classmethod
    def validate_callback_url(cls, v):
        if v is None or v == "":
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("callback_url must be an http(s) URL")
        return v


class PayoutStatusRequest(BaseModel):
    """Schema for POST /api/payout/status"""

    model_config = ConfigDict(populate_by_name=True)

    client_unique_id: str = Field(
        ...,
        alias="clientUniqueId",
        min_length=1,
        max_length=100,
        pattern=r"^[A-Za-z0-9_-]+$",
    )


class PayoutCancelRequest(PayoutStatusRequest):
    """Schema for POST /api/payout/cancel"""

    reason: Optional[str] = Field(None, max_length=200)
