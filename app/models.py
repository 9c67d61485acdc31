from beanie import Document, Indexed
from pydantic import Field
from pymongo import IndexModel, ASCENDING
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


# Payout transaction; terminal rows are kept for audit and status queries
class Transaction(Document):
    """Payout request and its lifecycle record"""

    tx_id: Indexed(str, unique=True)
    amount: float
    currency: str
    destination: str
    payment_method: str
    status: Indexed(str) = TransactionStatus.PENDING.value
    operator_id: Optional[int] = None  # set on PENDING -> ACCEPTED, never cleared
    callback_url: Optional[str] = None
    expires_at: Indexed(datetime)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "transactions"


class Operator(Document):
    """Human operator (or admin) reachable through the bot"""

    telegram_id: Indexed(int, unique=True)
    username: Optional[str] = None
    balance: float = 0.0
    max_balance: float = 0.0
    is_operator: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "operators"
        indexes = [
            IndexModel([("is_operator", ASCENDING), ("balance", ASCENDING)], name="operator_balance"),
        ]


class Proof(Document):
    """Uploaded payment evidence; at most one per transaction"""

    tx_id: Indexed(str, unique=True)
    path: Indexed(str)
    operator_id: int
    verified: bool = False
    verified_by: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "proofs"


class ExchangeRate(Document):
    """Consensus rate for a currency pair, one row per (from, to, source)"""

    from_currency: str
    to_currency: str
    source: str
    rate: float
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "exchange_rates"
        indexes = [
            IndexModel(
                [("from_currency", ASCENDING), ("to_currency", ASCENDING), ("source", ASCENDING)],
                unique=True,
                name="from_to_source",
            ),
        ]


DOCUMENT_MODELS = [Transaction, Operator, Proof, ExchangeRate]
