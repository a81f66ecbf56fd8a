"""
Mock configuration fixtures for testing.

Provides consistent settings with constants that tests can reference. Every
ledger lives in its own SQLite file under pytest's tmp_path, and retry backoff
is zeroed so transient-failure tests run instantly.
"""

import pytest
from unittest.mock import patch

from rewards_tracker.config import LedgerSettings, ProviderSettings, SweepSettings
from rewards_tracker.ledger import LotLedger
from rewards_tracker.store import LedgerStore


# Test account addresses (constants for test assertions)
TEST_VOTE_ACCOUNT = "Vote111111111111111111111111111111111111111"
TEST_STAKE_ACCOUNT = "Stake11111111111111111111111111111111111111"
TEST_IDENTITY_ACCOUNT = "Ident11111111111111111111111111111111111111"

# Test sheet configuration
TEST_REPORT_SHEET_ID = "test-report-sheet-123"
TEST_GOOGLE_CREDENTIALS_PATH = "/tmp/test-credentials.json"

# Time
T0 = 1_700_000_000  # 2023-11-14T22:13:20Z
DAY = 86_400
TEST_HOLDING_PERIOD_SECONDS = 365 * DAY

TEST_MAX_TRIES = 3
TEST_SWEEP_MAX_ATTEMPTS = 3


def _ledger_env(database_url: str) -> dict:
    return {
        'LEDGER_DATABASE_URL': database_url,
        'ASSET_SYMBOL': 'SOL',
        'REFERENCE_CURRENCY': 'USD',
        'HOLDING_PERIOD_SECONDS': str(TEST_HOLDING_PERIOD_SECONDS),
        'ROUNDING_MODE': 'ROUND_HALF_EVEN',
        'LOT_STRATEGY': 'FIFO',
        'BALANCE_TOLERANCE': '0',
        'VERIFY_BALANCES': 'false',
        'RECONCILE_WORKERS': '4',
    }


@pytest.fixture
def ledger_settings(tmp_path):
    """
    LedgerSettings pointing at a fresh SQLite file.

    Usage:
        def test_something(ledger_settings):
            assert ledger_settings.lot_strategy == CostBasisMethod.FIFO
    """
    with patch.dict('os.environ', _ledger_env(f"sqlite:///{tmp_path / 'ledger.db'}"), clear=False):
        yield LedgerSettings()


@pytest.fixture
def provider_settings():
    with patch.dict('os.environ', {
        'PROVIDER_TIMEOUT_SECONDS': '1',
        'PROVIDER_MAX_TRIES': str(TEST_MAX_TRIES),
        'PROVIDER_BACKOFF_FACTOR': '0',
        'PROVIDER_BACKOFF_MAX': '0',
    }, clear=False):
        yield ProviderSettings()


@pytest.fixture
def sweep_settings():
    """SweepSettings with a 1 SOL threshold, no retain reserve and instant retries."""
    with patch.dict('os.environ', {
        'SWEEP_MIN_QUANTITY': '1',
        'SWEEP_RETAIN_QUANTITY': '0',
        'SWEEP_MAX_ATTEMPTS': str(TEST_SWEEP_MAX_ATTEMPTS),
        'SWEEP_BACKOFF_FACTOR': '0',
        'SWEEP_BACKOFF_MAX': '0',
    }, clear=False):
        yield SweepSettings()


@pytest.fixture
def ledger_factory(tmp_path):
    """
    Factory for independent ledgers, each with its own store file.

    Usage:
        def test_something(ledger_factory):
            first = ledger_factory("first")
            second = ledger_factory("second")
    """
    stores = []

    def make(name: str = "ledger") -> LotLedger:
        with patch.dict('os.environ', _ledger_env(f"sqlite:///{tmp_path / (name + '.db')}"), clear=False):
            settings = LedgerSettings()
        store = LedgerStore(settings.database_url)
        stores.append(store)
        return LotLedger(store, settings)

    yield make

    for store in stores:
        store.dispose()


@pytest.fixture
def ledger(ledger_settings):
    """LotLedger over a fresh store with the vote, stake and identity test accounts registered."""
    from rewards_tracker.models import AccountRole

    store = LedgerStore(ledger_settings.database_url)
    lot_ledger = LotLedger(store, ledger_settings)
    lot_ledger.register_account(TEST_VOTE_ACCOUNT, AccountRole.VOTE, "Test vote account")
    lot_ledger.register_account(TEST_STAKE_ACCOUNT, AccountRole.STAKE, "Test stake account")
    lot_ledger.register_account(TEST_IDENTITY_ACCOUNT, AccountRole.SYSTEM, "Test identity account")
    yield lot_ledger
    store.dispose()
