import asyncio
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pymongo.errors import DuplicateKeyError

# Environment must be in place before the app reads its configuration
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017/payouts_test")
os.environ.setdefault("PRIVATE_TOKEN", "test_private_token")
os.environ.setdefault("MONITORING_API_KEY", "test_monitoring_key")

from fastapi.testclient import TestClient  # noqa: E402

from app.core.cache import TTLCache  # noqa: E402
from app.core.config import PayoutConfig, RateConfig, reset_config  # noqa: E402
from app.core.container import (  # noqa: E402
    get_payout_service,
    get_payout_store,
    get_proof_storage,
    get_rate_aggregator,
)
from app.core.limiter import limiter  # noqa: E402
from app.main import app  # noqa: E402
from app.models import TransactionStatus  # noqa: E402
from app.schemas.payout import PayoutCreateRequest  # noqa: E402
from app.services.callbacks import CallbackNotifier  # noqa: E402
from app.services.dispatch import OperatorDispatcher, ShortIdRegistry  # noqa: E402
from app.services.expiration import ExpirationScheduler  # noqa: E402
from app.services.payout_service import PayoutService  # noqa: E402

PRIVATE_TOKEN = os.environ["PRIVATE_TOKEN"]
NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
NOW_TS = int(NOW.timestamp())


class InMemoryPayoutStore:
    """
    Store double with the same contract as PayoutStore.

    conditional_transition yields to the event loop before the guarded
    update, then checks and writes without awaiting, so concurrent callers
    interleave the way they would against a real database.
    """

    def __init__(self):
        self.transactions = {}
        self.proofs = {}
        self.operators = {}
        self.rates = {}
        self.transition_calls = []

    # --- transactions ---

    async def create_transaction(self, fields):
        if fields["tx_id"] in self.transactions:
            raise DuplicateKeyError("duplicate tx_id")
        record = SimpleNamespace(
            operator_id=None,
            callback_url=None,
            metadata={},
            status=TransactionStatus.PENDING.value,
            created_at=NOW,
            updated_at=NOW,
        )
        for key, value in fields.items():
            setattr(record, key, value)
        self.transactions[record.tx_id] = record
        return record

    async def conditional_transition(self, tx_id, expected, new_status, patch=None, deadline_after=None):
        await asyncio.sleep(0)
        self.transition_calls.append((tx_id, new_status))
        if isinstance(expected, TransactionStatus):
            allowed = {expected.value}
        else:
            allowed = {status.value for status in expected}

        record = self.transactions.get(tx_id)
        if record is None or record.status not in allowed:
            return False
        if deadline_after is not None and record.expires_at <= deadline_after:
            return False

        record.status = new_status.value
        for key, value in (patch or {}).items():
            setattr(record, key, value)
        return True

    async def get_transaction(self, tx_id):
        return self.transactions.get(tx_id)

    async def list_pending(self):
        return [t for t in self.transactions.values() if t.status == TransactionStatus.PENDING.value]

    async def count_by_status(self, since):
        result = {}
        for t in self.transactions.values():
            if t.created_at >= since:
                count, total = result.get(t.status, (0, 0.0))
                result[t.status] = (count + 1, total + t.amount)
        return result

    # --- proofs ---

    async def create_proof(self, fields):
        if fields["tx_id"] in self.proofs:
            raise DuplicateKeyError("duplicate proof")
        proof = SimpleNamespace(verified=False, **fields)
        self.proofs[fields["tx_id"]] = proof
        return proof

    async def delete_proof(self, tx_id):
        self.proofs.pop(tx_id, None)

    async def get_proof(self, tx_id):
        return self.proofs.get(tx_id)

    async def get_proof_by_path(self, path, tx_id):
        proof = self.proofs.get(tx_id)
        return proof if proof is not None and proof.path == path else None

    # --- operators ---

    def add_operator(self, telegram_id, balance=0.0, is_operator=True, username=None):
        operator = SimpleNamespace(
            telegram_id=telegram_id,
            username=username,
            balance=balance,
            max_balance=balance,
            is_operator=is_operator,
        )
        self.operators[telegram_id] = operator
        return operator

    async def list_eligible_operators(self, min_balance):
        return [o for o in self.operators.values() if o.is_operator and o.balance >= min_balance]

    async def list_operators(self):
        return [o for o in self.operators.values() if o.is_operator]

    async def get_operator(self, telegram_id):
        return self.operators.get(telegram_id)

    async def ensure_user(self, telegram_id, username=None):
        if telegram_id not in self.operators:
            self.add_operator(telegram_id, is_operator=False, username=username)
        return self.operators[telegram_id]

    async def promote_operator(self, telegram_id):
        existing = telegram_id in self.operators
        if existing:
            self.operators[telegram_id].is_operator = True
        else:
            self.add_operator(telegram_id)
        return existing

    async def set_operator_balance(self, telegram_id, balance):
        operator = self.operators.get(telegram_id)
        if operator is None:
            return False
        operator.balance = balance
        operator.max_balance = max(operator.max_balance, balance)
        return True

    async def total_operator_balance(self):
        return sum(o.balance for o in self.operators.values()), len(self.operators)

    # --- rates ---

    async def upsert_consensus_rate(self, from_currency, to_currency, source, rate):
        self.rates[(from_currency, to_currency, source)] = SimpleNamespace(
            from_currency=from_currency,
            to_currency=to_currency,
            source=source,
            rate=rate,
            created_at=NOW,
        )

    async def get_latest_rate(self, from_currency, to_currency):
        matches = [r for (f, t, _), r in self.rates.items() if f == from_currency and t == to_currency]
        return max(matches, key=lambda r: r.created_at) if matches else None


class FakeNotifier:
    """Operator channel double recording every card it is asked to deliver"""

    def __init__(self, failing=()):
        self.sent = []
        self.failing = set(failing)

    async def notify_operator(self, operator_id, payload):
        self.sent.append((operator_id, payload))
        if operator_id in self.failing:
            raise RuntimeError("chat not found")
        return True


def make_payout_request(**overrides):
    data = {
        "destination": "2202206123456789",
        "amount": "1500.00",
        "walletId": "sberbank",
        "expiredTime": NOW_TS,
        "expiredOfferTime": NOW_TS + 600,
        "callback_url": "https://merchant.example/callback",
    }
    data.update(overrides)
    return PayoutCreateRequest(**data)


@pytest.fixture
def payout_config():
    return PayoutConfig(min_amount=Decimal("100"), max_amount=Decimal("100000"), currency="RUB")


@pytest.fixture
def rate_config():
    return RateConfig(from_currency="USDT", to_currency="RUB", update_interval_seconds=300, cache_ttl_seconds=240)


@pytest.fixture
def store():
    store = InMemoryPayoutStore()
    store.add_operator(1001, balance=5000.0, username="alice")
    store.add_operator(1002, balance=50000.0, username="bob")
    store.add_operator(1003, balance=100.0, username="carol")
    store.add_operator(2001, balance=90000.0, is_operator=False)
    return store


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def registry():
    return ShortIdRegistry(length=11, ttl_seconds=3600, max_entries=100)


@pytest.fixture
def expirations():
    mock = MagicMock(spec=ExpirationScheduler)
    mock.arm.return_value = 600.0
    mock.disarm.return_value = True
    return mock


@pytest.fixture
def callbacks():
    return MagicMock(spec=CallbackNotifier)


@pytest.fixture
def service(store, notifier, registry, expirations, callbacks, payout_config):
    dispatcher = OperatorDispatcher(store, notifier, registry)
    return PayoutService(
        store=store,
        dispatcher=dispatcher,
        expirations=expirations,
        callbacks=callbacks,
        config=payout_config,
        clock=lambda: NOW,
    )


@pytest.fixture
def payout_request():
    return make_payout_request()


@pytest.fixture
def fake_clock():
    """Mutable monotonic clock for TTL tests"""
    return SimpleNamespace(now=1000.0)


@pytest.fixture
def ttl_cache(fake_clock):
    return TTLCache(default_ttl=60, max_entries=3, clock=lambda: fake_clock.now)


# --- HTTP layer ---

@pytest.fixture
def mock_db_init():
    """Mock database initialization to prevent CollectionWasNotInitialized errors"""
    with patch("app.database.init_beanie", new_callable=AsyncMock) as mock_init:
        mock_init.return_value = None
        yield mock_init


@pytest.fixture
def mock_payout_service():
    return MagicMock(spec=PayoutService)


@pytest.fixture
def mock_rate_aggregator():
    mock = MagicMock()
    mock.get_rate = AsyncMock()
    return mock


@pytest.fixture
def mock_payout_store():
    return MagicMock(spec=InMemoryPayoutStore)


@pytest.fixture
def mock_proof_storage():
    return MagicMock()


@pytest.fixture
def client(mock_db_init, mock_payout_service, mock_rate_aggregator, mock_payout_store, mock_proof_storage):
    """FastAPI TestClient with services replaced by mocks"""
    reset_config()
    limiter.reset()
    app.dependency_overrides[get_payout_service] = lambda: mock_payout_service
    app.dependency_overrides[get_rate_aggregator] = lambda: mock_rate_aggregator
    app.dependency_overrides[get_payout_store] = lambda: mock_payout_store
    app.dependency_overrides[get_proof_storage] = lambda: mock_proof_storage
    yield TestClient(app)
    app.dependency_overrides.clear()
    reset_config()


@pytest.fixture
def auth_headers():
    return {"token": PRIVATE_TOKEN}


@pytest.fixture
def create_body():
    return {
        "destination": "2202206123456789",
        "amount": 1500,
        "walletId": "sberbank",
        "expiredTime": NOW_TS,
        "expiredOfferTime": NOW_TS + 600,
        "callback_url": "https://merchant.example/callback",
    }


@pytest.fixture
def deadline():
    return NOW + timedelta(minutes=10)
