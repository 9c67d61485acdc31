from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from app.services.dispatch import OperatorDispatcher, ShortIdRegistry
from tests.conftest import FakeNotifier


def make_transaction(tx_id="TX_0123456789-abcdef", destination="2202206123456789"):
    return SimpleNamespace(
        tx_id=tx_id,
        amount=1500.0,
        currency="RUB",
        payment_method="sbp",
        destination=destination,
        expires_at=datetime(2025, 1, 1, 12, 10, tzinfo=timezone.utc),
    )


class TestShortIdRegistry:
    def test_shorten_is_prefix(self):
        registry = ShortIdRegistry(length=11)
        assert registry.shorten("TX_0123456789abcdef") == "TX_01234567"

    def test_register_and_resolve(self, registry):
        short_id = registry.register("TX_0123456789abcdef")

        assert registry.resolve(short_id) == "TX_0123456789abcdef"
        assert registry.resolve("TX_unknown") is None

    def test_collision_overwrites_and_warns(self, registry, caplog):
        registry.register("TX_01234567-first")

        with caplog.at_level("WARNING"):
            short_id = registry.register("TX_01234567-second")

        assert registry.resolve(short_id) == "TX_01234567-second"
        assert "collision" in caplog.text

    def test_entries_expire(self):
        clock = SimpleNamespace(now=0.0)
        registry = ShortIdRegistry(length=11, ttl_seconds=10, clock=lambda: clock.now)
        short_id = registry.register("TX_0123456789abcdef")

        clock.now = 11.0

        assert registry.resolve(short_id) is None

    def test_bounded(self):
        registry = ShortIdRegistry(length=4, max_entries=2)
        for tx_id in ("AAAA1", "BBBB1", "CCCC1"):
            registry.register(tx_id)

        assert len(registry) == 2
        assert registry.resolve("AAAA") is None


class TestOperatorDispatcher:
    @pytest.mark.asyncio
    async def test_select_eligible_uses_balance(self, store, registry):
        dispatcher = OperatorDispatcher(store, FakeNotifier(), registry)

        eligible = await dispatcher.select_eligible(5000.0)

        assert sorted(op.telegram_id for op in eligible) == [1001, 1002]

    @pytest.mark.asyncio
    async def test_dispatch_notifies_every_operator(self, store, registry):
        notifier = FakeNotifier()
        dispatcher = OperatorDispatcher(store, notifier, registry)
        operators = await store.list_operators()

        result = await dispatcher.dispatch(make_transaction(), operators)

        assert result.short_id == "TX_01234567"
        assert sorted(result.notified) == [1001, 1002, 1003]
        assert result.failed == []
        assert all(payload.destination_suffix == "6789" for _, payload in notifier.sent)

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, store, registry):
        notifier = FakeNotifier(failing={1002})
        dispatcher = OperatorDispatcher(store, notifier, registry)
        operators = await store.list_operators()

        with patch("app.services.dispatch.error_monitor") as monitor:
            result = await dispatcher.dispatch(make_transaction(), operators)

        assert sorted(result.notified) == [1001, 1003]
        assert result.failed == [1002]
        monitor.log_error.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_channel_counts_all_as_failed(self, store, registry):
        dispatcher = OperatorDispatcher(store, None, registry)
        operators = await store.list_operators()

        result = await dispatcher.dispatch(make_transaction(), operators)

        assert result.notified == []
        assert sorted(result.failed) == [1001, 1002, 1003]
        assert registry.resolve(result.short_id) == "TX_0123456789-abcdef"
