"""
Persistent store for payouts, operators, proofs and consensus rates.

Every state change goes through `conditional_transition`, a single
`update_one` whose filter carries the expected state(s). The caller learns
whether the guard matched from `matched_count`; the state field is never read
and written back in two round trips.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from app.models import (
    ExchangeRate,
    Operator,
    Proof,
    Transaction,
    TransactionStatus,
    utcnow,
)
from app.services.state_machine import assert_transition

logger = logging.getLogger(__name__)

StatusSpec = Union[TransactionStatus, Iterable[TransactionStatus]]


def _status_values(expected: StatusSpec) -> List[str]:
    if isinstance(expected, TransactionStatus):
        return [expected.value]
    return [status.value for status in expected]


class PayoutStore:
    """MongoDB implementation of the payout store contract"""

    # --- transactions ---

    async def create_transaction(self, fields: Dict[str, Any]) -> Transaction:
        transaction = Transaction(**fields)
        await transaction.insert()
        return transaction

    async def conditional_transition(
        self,
        tx_id: str,
        expected: StatusSpec,
        new_status: TransactionStatus,
        patch: Optional[Dict[str, Any]] = None,
        deadline_after: Optional[datetime] = None,
    ) -> bool:
        """
        Move `tx_id` to `new_status` only if its current status is in `expected`.

        Fields in `patch` are written in the same operation as the status.
        With `deadline_after`, the row must also have `expires_at` later than it.

        Returns:
            True if exactly one row matched the guard
        """
        statuses = _status_values(expected)
        for status in statuses:
            assert_transition(TransactionStatus(status), new_status)

        update = {"status": new_status.value, "updated_at": utcnow()}
        if patch:
            update.update(patch)

        query: Dict[str, Any] = {"tx_id": tx_id, "status": {"$in": statuses}}
        if deadline_after is not None:
            query["expires_at"] = {"$gt": deadline_after}

        result = await Transaction.find_one(query).update({"$set": update})

        return result is not None and result.matched_count == 1

    async def get_transaction(self, tx_id: str) -> Optional[Transaction]:
        return await Transaction.find_one({"tx_id": tx_id})

    async def list_pending(self) -> List[Transaction]:
        return await Transaction.find(
            {"status": TransactionStatus.PENDING.value}
        ).to_list()

    async def count_by_status(self, since: datetime) -> Dict[str, Tuple[int, float]]:
        """Per-status (count, amount sum) for transactions created since `since`."""
        rows = await Transaction.find({"created_at": {"$gte": since}}).aggregate(
            [{"$group": {"_id": "$status", "count": {"$sum": 1}, "total": {"$sum": "$amount"}}}]
        ).to_list()
        return {row["_id"]: (row["count"], row["total"]) for row in rows}

    # --- proofs ---

    async def create_proof(self, fields: Dict[str, Any]) -> Proof:
        proof = Proof(**fields)
        await proof.insert()
        return proof

    async def get_proof(self, tx_id: str) -> Optional[Proof]:
        return await Proof.find_one({"tx_id": tx_id})

    async def delete_proof(self, tx_id: str) -> None:
        await Proof.find_one({"tx_id": tx_id}).delete()

    async def get_proof_by_path(self, path: str, tx_id: str) -> Optional[Proof]:
        return await Proof.find_one({"path": path, "tx_id": tx_id})

    # --- operators ---

    async def list_eligible_operators(self, min_balance: float) -> List[Operator]:
        return await Operator.find(
            {"is_operator": True, "balance": {"$gte": min_balance}}
        ).to_list()

    async def list_operators(self) -> List[Operator]:
        return await Operator.find({"is_operator": True}).to_list()

    async def get_operator(self, telegram_id: int) -> Optional[Operator]:
        return await Operator.find_one({"telegram_id": telegram_id})

    async def ensure_user(self, telegram_id: int, username: Optional[str] = None) -> Operator:
        """Register an unknown bot user without operator rights."""
        existing = await self.get_operator(telegram_id)
        if existing:
            return existing
        user = Operator(telegram_id=telegram_id, username=username, is_operator=False)
        await user.insert()
        return user

    async def promote_operator(self, telegram_id: int) -> bool:
        """Grant operator rights, creating the user if needed. Returns True if the user existed."""
        existing = await self.get_operator(telegram_id)
        if existing:
            await Operator.find_one({"telegram_id": telegram_id}).update(
                {"$set": {"is_operator": True}}
            )
            return True
        await Operator(telegram_id=telegram_id, is_operator=True).insert()
        return False

    async def set_operator_balance(self, telegram_id: int, balance: float) -> bool:
        result = await Operator.find_one({"telegram_id": telegram_id}).update(
            {"$set": {"balance": balance}, "$max": {"max_balance": balance}}
        )
        return result is not None and result.matched_count == 1

    async def total_operator_balance(self) -> Tuple[float, int]:
        users = await Operator.find({}).to_list()
        return sum(user.balance for user in users), len(users)

    # --- exchange rates ---

    async def upsert_consensus_rate(
        self, from_currency: str, to_currency: str, source: str, rate: float
    ) -> None:
        now = utcnow()
        await ExchangeRate.find_one(
            {"from_currency": from_currency, "to_currency": to_currency, "source": source}
        ).upsert(
            {"$set": {"rate": rate, "created_at": now}},
            on_insert=ExchangeRate(
                from_currency=from_currency,
                to_currency=to_currency,
                source=source,
                rate=rate,
                created_at=now,
            ),
        )

    async def get_latest_rate(self, from_currency: str, to_currency: str) -> Optional[ExchangeRate]:
        return await ExchangeRate.find(
            {"from_currency": from_currency, "to_currency": to_currency}
        ).sort("-created_at").first_or_none()
