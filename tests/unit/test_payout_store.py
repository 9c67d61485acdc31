from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.models import TransactionStatus
from app.repositories.payout_store import PayoutStore
from app.services.state_machine import InvalidTransition


@pytest.fixture
def transaction_model():
    with patch("app.repositories.payout_store.Transaction") as model:
        query = MagicMock()
        query.update = AsyncMock(return_value=SimpleNamespace(matched_count=1))
        model.find_one.return_value = query
        yield model


class TestConditionalTransition:
    @pytest.mark.asyncio
    async def test_single_guarded_update(self, transaction_model):
        store = PayoutStore()

        changed = await store.conditional_transition(
            "TX_abc",
            TransactionStatus.PENDING,
            TransactionStatus.ACCEPTED,
            {"operator_id": 1001},
        )

        assert changed is True
        transaction_model.find_one.assert_called_once_with(
            {"tx_id": "TX_abc", "status": {"$in": ["PENDING"]}}
        )
        update = transaction_model.find_one.return_value.update.call_args.args[0]["$set"]
        assert update["status"] == "ACCEPTED"
        assert update["operator_id"] == 1001
        assert "updated_at" in update

    @pytest.mark.asyncio
    async def test_guard_miss_reports_false(self, transaction_model):
        transaction_model.find_one.return_value.update.return_value = SimpleNamespace(matched_count=0)
        store = PayoutStore()

        changed = await store.conditional_transition(
            "TX_abc", TransactionStatus.PENDING, TransactionStatus.EXPIRED
        )

        assert changed is False

    @pytest.mark.asyncio
    async def test_multiple_expected_states(self, transaction_model):
        store = PayoutStore()

        await store.conditional_transition(
            "TX_abc",
            [TransactionStatus.PENDING, TransactionStatus.ACCEPTED],
            TransactionStatus.CANCELLED,
        )

        query = transaction_model.find_one.call_args.args[0]
        assert query["status"] == {"$in": ["PENDING", "ACCEPTED"]}

    @pytest.mark.asyncio
    async def test_deadline_guard_in_filter(self, transaction_model):
        store = PayoutStore()
        now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

        await store.conditional_transition(
            "TX_abc", TransactionStatus.PENDING, TransactionStatus.ACCEPTED, deadline_after=now
        )

        query = transaction_model.find_one.call_args.args[0]
        assert query["expires_at"] == {"$gt": now}

    @pytest.mark.asyncio
    async def test_illegal_edge_never_reaches_database(self, transaction_model):
        store = PayoutStore()

        with pytest.raises(InvalidTransition):
            await store.conditional_transition(
                "TX_abc", TransactionStatus.ACCEPTED, TransactionStatus.EXPIRED
            )

        transaction_model.find_one.assert_not_called()


class TestOperatorBalance:
    @pytest.mark.asyncio
    async def test_set_balance_raises_high_water_mark(self):
        with patch("app.repositories.payout_store.Operator") as model:
            query = MagicMock()
            query.update = AsyncMock(return_value=SimpleNamespace(matched_count=1))
            model.find_one.return_value = query

            assert await PayoutStore().set_operator_balance(1001, 2500.0) is True

        update = query.update.call_args.args[0]
        assert update == {"$set": {"balance": 2500.0}, "$max": {"max_balance": 2500.0}}


class TestProofs:
    @pytest.mark.asyncio
    async def test_delete_proof_by_transaction(self):
        with patch("app.repositories.payout_store.Proof") as model:
            query = MagicMock()
            query.delete = AsyncMock()
            model.find_one.return_value = query

            await PayoutStore().delete_proof("TX_abc")

        model.find_one.assert_called_once_with({"tx_id": "TX_abc"})
        query.delete.assert_awaited_once()
