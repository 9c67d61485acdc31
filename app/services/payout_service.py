"""
Payout lifecycle service.

PENDING  --accept-->        ACCEPTED
PENDING  --expire-->        EXPIRED
PENDING  --no operators-->  FAILED
ACCEPTED --confirm_proof--> COMPLETED
non-terminal --cancel-->    CANCELLED

Every transition is a single conditional update in the store, guarded by the
states it may be entered from. Losing the guard means another actor resolved
the transaction first (StaleStateError), which is expected under concurrent
operators and the expiry timer racing each other.

Terminal transitions schedule one best-effort callback to the caller after
the update commits.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from app.constants.banks import is_supported_method
from app.core.config import PayoutConfig
from app.core.exceptions import (
    BaseAppError,
    DatabaseError,
    NoOperatorsAvailableError,
    NotFoundError,
    PayoutValidationError,
    StaleStateError,
    UnauthorizedOperatorError,
)
from app.core.monitoring import error_monitor, monitor_errors
from app.models import Transaction, TransactionStatus as S
from app.schemas.payout import PayoutCreateRequest
from app.schemas.responses import PayoutStatusResponse
from app.services.callbacks import CallbackNotifier
from app.services.dispatch import OperatorDispatcher
from app.services.expiration import ExpirationScheduler, _aware
from app.services.state_machine import TERMINAL_STATUSES, coarse_status, sources_for

logger = logging.getLogger(__name__)

# Last second representable as a datetime (9999-12-31T23:59:59Z); larger
# values are usually millisecond timestamps
MAX_UNIX_SECONDS = 253402300799

TERMINAL_REASONS = {
    S.COMPLETED: "",
    S.FAILED: "No operators available",
    S.EXPIRED: "Transaction expired",
    S.CANCELLED: "Transaction cancelled",
}


def generate_tx_id() -> str:
    return f"TX_{uuid.uuid4()}"


class PayoutService:
    """State machine for payout transactions"""

    def __init__(
        self,
        store,
        dispatcher: OperatorDispatcher,
        expirations: ExpirationScheduler,
        callbacks: CallbackNotifier,
        config: PayoutConfig,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        id_factory: Callable[[], str] = generate_tx_id,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.expirations = expirations
        self.callbacks = callbacks
        self.config = config
        self._clock = clock
        self._id_factory = id_factory

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(self, request: PayoutCreateRequest) -> Transaction:
        """
        Validate, persist and announce a new payout.

        Raises:
            PayoutValidationError: If the request is out of bounds (nothing persisted)
            NoOperatorsAvailableError: If nobody can take it (transaction is FAILED)
            DatabaseError: If the transaction could not be persisted
        """
        self._validate_request(request)

        tx_id = self._id_factory()
        fields = {
            "tx_id": tx_id,
            "amount": float(request.amount),
            "currency": self.config.currency,
            "destination": request.destination,
            "payment_method": request.wallet_id.lower(),
            "callback_url": request.callback_url,
            "expires_at": datetime.fromtimestamp(request.expired_offer_time, tz=timezone.utc),
            "metadata": {
                "sbp_bank": request.sbp_bank,
                "expired_time": request.expired_time,
            },
            "status": S.PENDING.value,
        }

        try:
            transaction = await self.store.create_transaction(fields)
        except Exception as e:
            logger.error(f"Failed to persist payout {tx_id}", exc_info=True)
            raise DatabaseError("Failed to create payout", operation="create_transaction") from e

        logger.info(f"Payout {tx_id} created: {request.amount} {self.config.currency} via {fields['payment_method']}")

        try:
            operators = await self.dispatcher.select_eligible(transaction.amount)
        except Exception as e:
            await self._transition(tx_id, S.FAILED, transaction=transaction, reason="Operator lookup failed")
            raise DatabaseError("Failed to select operators", operation="list_eligible_operators") from e

        if not operators:
            # Fail before any notification so nobody sees a dead payout
            await self._transition(tx_id, S.FAILED, transaction=transaction)
            raise NoOperatorsAvailableError(tx_id, transaction.amount)

        self.expirations.arm(tx_id, transaction.expires_at, self.expire)
        await self.dispatcher.dispatch(transaction, operators)
        return transaction

    def _validate_request(self, request: PayoutCreateRequest) -> None:
        if not is_supported_method(request.wallet_id):
            raise PayoutValidationError(
                "Unsupported payout method", field="walletId", value=request.wallet_id
            )

        if not request.destination or not request.destination.strip():
            raise PayoutValidationError("Destination cannot be empty", field="destination")

        amount = Decimal(str(request.amount))
        if amount < self.config.min_amount or amount > self.config.max_amount:
            raise PayoutValidationError(
                f"Amount must be between {self.config.min_amount} and "
                f"{self.config.max_amount} {self.config.currency}",
                field="amount",
                value=request.amount,
            )

        if not (
            request.expired_time > 0
            and request.expired_offer_time > 0
            and request.expired_time < request.expired_offer_time
        ):
            raise PayoutValidationError(
                "Invalid timestamps", field="expiredOfferTime", value=request.expired_offer_time
            )
        if request.expired_offer_time > MAX_UNIX_SECONDS:
            raise PayoutValidationError(
                "Timestamps must be unix seconds", field="expiredOfferTime", value=request.expired_offer_time
            )

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    async def accept(self, tx_id: str, operator_id: int, destination: Optional[str] = None) -> Transaction:
        """
        Claim a PENDING payout for `operator_id`.

        At most one accept ever wins and never after `expires_at`; the status
        and deadline guard and the operator/destination fields go out in one
        conditional update. An accept that finds the deadline already passed
        expires the transaction itself.

        Raises:
            NotFoundError: Unknown transaction
            StaleStateError: Already accepted, expired, failed or cancelled
        """
        patch: Dict[str, Any] = {"operator_id": operator_id}
        if destination:
            patch["destination"] = destination

        now = self._clock()
        if not await self._transition(tx_id, S.ACCEPTED, patch=patch, deadline_after=now):
            current = await self._get_or_raise(tx_id)
            if current.status == S.PENDING.value and _aware(current.expires_at) <= now:
                # Deadline passed before the timer fired
                await self.expire(tx_id)
            await self._raise_stale_or_missing(tx_id, S.PENDING)

        self.expirations.disarm(tx_id)
        logger.info(f"Payout {tx_id} accepted by operator {operator_id}")
        return await self._reload(tx_id)

    async def accept_short(self, short_id: str, operator_id: int) -> Transaction:
        """Accept by the short id carried in the operator's notification."""
        tx_id = self.dispatcher.registry.resolve(short_id)
        if tx_id is None:
            raise NotFoundError("Transaction", short_id)
        return await self.accept(tx_id, operator_id)

    async def confirm_proof(self, tx_id: str, operator_id: int, artifact_ref: str) -> Transaction:
        """
        Attach proof of payment and complete the payout.

        Only the assigned operator can reach this point, so the read of the
        current row is not racing other operators.

        Raises:
            NotFoundError: Unknown transaction
            UnauthorizedOperatorError: Submitter is not the assigned operator
            StaleStateError: Transaction is not ACCEPTED
        """
        transaction = await self._get_or_raise(tx_id)

        if transaction.operator_id is not None and transaction.operator_id != operator_id:
            raise UnauthorizedOperatorError(tx_id, operator_id)
        if transaction.status != S.ACCEPTED.value:
            raise StaleStateError(tx_id, S.ACCEPTED.value, transaction.status)

        try:
            await self.store.create_proof(
                {"tx_id": tx_id, "path": artifact_ref, "operator_id": operator_id}
            )
        except DuplicateKeyError:
            raise StaleStateError(tx_id, S.ACCEPTED.value, "PROOF_EXISTS")
        except Exception as e:
            logger.error(f"Failed to store proof for {tx_id}", exc_info=True)
            raise DatabaseError("Failed to store proof", operation="create_proof") from e

        if not await self._transition(tx_id, S.COMPLETED, transaction=transaction):
            # Cancelled meanwhile; the proof must not outlive its transaction
            await self._discard_proof(tx_id)
            await self._raise_stale_or_missing(tx_id, S.ACCEPTED)

        logger.info(f"Payout {tx_id} completed by operator {operator_id}")
        return await self._reload(tx_id)

    @monitor_errors("expire_transaction")
    async def expire(self, tx_id: str) -> bool:
        """
        Deadline handler. A transaction that already left PENDING is a no-op.

        Returns:
            True if this call expired the transaction
        """
        expired = await self._transition(tx_id, S.EXPIRED)
        if expired:
            logger.info(f"Payout {tx_id} expired")
        else:
            logger.debug(f"Expiry for {tx_id} ignored; no longer PENDING")
        return expired

    async def cancel(self, tx_id: str, reason: str = TERMINAL_REASONS[S.CANCELLED]) -> Transaction:
        """
        Cancel a non-terminal payout.

        Raises:
            NotFoundError: Unknown transaction
            StaleStateError: Already terminal
        """
        if not await self._transition(tx_id, S.CANCELLED, reason=reason):
            await self._raise_stale_or_missing(tx_id, "non-terminal")

        logger.info(f"Payout {tx_id} cancelled")
        return await self._reload(tx_id)

    async def _transition(
        self,
        tx_id: str,
        new_status: S,
        patch: Optional[Dict[str, Any]] = None,
        transaction: Optional[Transaction] = None,
        reason: Optional[str] = None,
        deadline_after: Optional[datetime] = None,
    ) -> bool:
        expected = sources_for(new_status)
        try:
            matched = await self.store.conditional_transition(
                tx_id, expected, new_status, patch, deadline_after=deadline_after
            )
        except Exception as e:
            logger.error(f"Failed to move {tx_id} to {new_status.value}", exc_info=True)
            raise DatabaseError(
                "Failed to update transaction", operation=f"transition_{new_status.value.lower()}"
            ) from e

        if not matched:
            return False

        error_monitor.log_transition(
            tx_id, "|".join(sorted(s.value for s in expected)), new_status.value, patch
        )

        if new_status in TERMINAL_STATUSES:
            if reason is None:
                reason = TERMINAL_REASONS[new_status]
            await self._notify_terminal(tx_id, new_status, reason, transaction)

        return True

    async def _notify_terminal(
        self, tx_id: str, status: S, reason: str, transaction: Optional[Transaction]
    ) -> None:
        if status is not S.EXPIRED:
            self.expirations.disarm(tx_id)

        try:
            if transaction is None:
                transaction = await self.store.get_transaction(tx_id)
        except Exception as e:
            # The transition is committed; only the callback is lost
            error_monitor.log_error(e, {"tx_id": tx_id, "context": "callback_lookup"})
            return

        if transaction is not None and transaction.callback_url:
            self.callbacks.schedule(transaction.callback_url, tx_id, status.value, reason)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    async def get_status(self, tx_id: str) -> PayoutStatusResponse:
        try:
            transaction = await self.store.get_transaction(tx_id)
            if transaction is None:
                raise NotFoundError("Transaction", tx_id)
            proof = await self.store.get_proof(tx_id)
        except BaseAppError:
            raise
        except Exception as e:
            logger.error(f"Database error retrieving payout {tx_id}", exc_info=True)
            raise DatabaseError("Failed to retrieve transaction", operation="find_transaction") from e

        completed = transaction.status == S.COMPLETED.value
        return PayoutStatusResponse(
            client_unique_id=transaction.tx_id,
            status=coarse_status(transaction.status),
            amount=transaction.amount,
            amount_paid=transaction.amount if completed else 0,
            reason="" if completed else transaction.status,
            code=0,
            screenshot=proof.path if proof else "",
        )

    async def reconcile_pending(self) -> Tuple[int, int]:
        """
        Startup sweep: expire overdue PENDING rows and re-arm the rest.

        Returns:
            (expired, rearmed) counts
        """
        expired = rearmed = 0
        now = self._clock()
        for transaction in await self.store.list_pending():
            if _aware(transaction.expires_at) <= now:
                if await self.expire(transaction.tx_id):
                    expired += 1
            else:
                self.expirations.arm(transaction.tx_id, transaction.expires_at, self.expire)
                rearmed += 1

        logger.info(f"Reconciliation: {expired} expired, {rearmed} timers re-armed")
        return expired, rearmed

    # ------------------------------------------------------------------

    async def _get_or_raise(self, tx_id: str) -> Transaction:
        transaction = await self.store.get_transaction(tx_id)
        if transaction is None:
            raise NotFoundError("Transaction", tx_id)
        return transaction

    async def _reload(self, tx_id: str) -> Transaction:
        return await self._get_or_raise(tx_id)

    async def _discard_proof(self, tx_id: str) -> None:
        try:
            await self.store.delete_proof(tx_id)
        except Exception as e:
            error_monitor.log_error(e, {"tx_id": tx_id, "context": "proof_cleanup"})

    async def _raise_stale_or_missing(self, tx_id: str, expected) -> None:
        current = await self._get_or_raise(tx_id)
        raise StaleStateError(tx_id, getattr(expected, "value", expected), current.status)
