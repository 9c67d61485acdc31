"""
Operator dispatch: eligibility selection and notification fan-out.

The notification channel's button payload is size-limited, so each payout is
addressed there by a short identifier (a fixed-length prefix of the full id).
The short -> full association lives only in this process (`ShortIdRegistry`).
It is lost on restart and two ids sharing a prefix overwrite each other; an
unresolvable short id makes the accept action fail with NotFoundError.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from app.core.cache import TTLCache
from app.core.exceptions import ExternalDeliveryError
from app.core.monitoring import error_monitor
from app.models import Operator, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperatorNotification:
    """Payout card delivered to one operator"""

    tx_id: str
    short_id: str
    amount: float
    currency: str
    payment_method: str
    destination_suffix: str
    expires_at: datetime


class OperatorNotifier(Protocol):
    async def notify_operator(self, operator_id: int, payload: OperatorNotification) -> bool:
        ...


@dataclass
class DispatchResult:
    short_id: str
    notified: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


class ShortIdRegistry:
    """Bounded, expiring map from short transaction ids to full ids"""

    def __init__(self, length: int = 11, ttl_seconds: float = 86400, max_entries: int = 10000, clock=None):
        self.length = length
        cache_kwargs = {"default_ttl": ttl_seconds, "max_entries": max_entries}
        if clock is not None:
            cache_kwargs["clock"] = clock
        self._cache = TTLCache(**cache_kwargs)

    def shorten(self, tx_id: str) -> str:
        return tx_id[: self.length]

    def register(self, tx_id: str) -> str:
        short_id = self.shorten(tx_id)
        previous = self._cache.get(short_id)
        if previous is not None and previous != tx_id:
            logger.warning(
                f"Short id {short_id} collision: {previous} replaced by {tx_id}"
            )
        self._cache.set(short_id, tx_id)
        return short_id

    def resolve(self, short_id: str) -> Optional[str]:
        return self._cache.get(short_id)

    def __len__(self) -> int:
        return len(self._cache)


class OperatorDispatcher:
    """Selects eligible operators and notifies each of them independently"""

    def __init__(self, store, notifier: Optional[OperatorNotifier], registry: ShortIdRegistry):
        self.store = store
        self.notifier = notifier
        self.registry = registry

    async def select_eligible(self, amount: float) -> List[Operator]:
        return await self.store.list_eligible_operators(amount)

    async def dispatch(self, transaction: Transaction, operators: List[Operator]) -> DispatchResult:
        short_id = self.registry.register(transaction.tx_id)
        result = DispatchResult(short_id=short_id)

        if self.notifier is None:
            logger.warning(
                f"No notification channel configured; {transaction.tx_id} not announced"
            )
            result.failed = [op.telegram_id for op in operators]
            return result

        payload = OperatorNotification(
            tx_id=transaction.tx_id,
            short_id=short_id,
            amount=transaction.amount,
            currency=transaction.currency,
            payment_method=transaction.payment_method,
            destination_suffix=transaction.destination[-4:],
            expires_at=transaction.expires_at,
        )

        outcomes = await asyncio.gather(
            *(self.notifier.notify_operator(op.telegram_id, payload) for op in operators),
            return_exceptions=True,
        )

        for operator, outcome in zip(operators, outcomes):
            if outcome is True:
                result.notified.append(operator.telegram_id)
                continue

            result.failed.append(operator.telegram_id)
            reason = repr(outcome) if isinstance(outcome, BaseException) else "not delivered"
            error_monitor.log_error(
                ExternalDeliveryError(
                    f"Operator notification failed: {reason}",
                    channel="operator_notification",
                    target=str(operator.telegram_id),
                ),
                {"tx_id": transaction.tx_id},
            )

        logger.info(
            f"Dispatched {transaction.tx_id} to {len(result.notified)}/{len(operators)} operators"
        )
        return result
