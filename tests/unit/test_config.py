"""Unit tests for environment-driven settings."""
from decimal import Decimal
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from rewards_tracker.config import SECONDS_PER_DAY, LedgerSettings, SweepSettings
from rewards_tracker.models import CostBasisMethod


def test_ledger_defaults():
    with patch.dict('os.environ', {}, clear=True):
        settings = LedgerSettings()

    assert settings.database_url == "sqlite:///rewards-ledger.db"
    assert settings.asset_symbol == "SOL"
    assert settings.holding_period_seconds == 365 * SECONDS_PER_DAY
    assert settings.rounding == "ROUND_HALF_EVEN"
    assert settings.lot_strategy == CostBasisMethod.FIFO
    assert settings.quantity_decimals == 9
    assert settings.verify_balances is False


def test_ledger_settings_from_environment():
    with patch.dict('os.environ', {
        'LOT_STRATEGY': 'hifo',
        'ROUNDING_MODE': 'round_down',
        'HOLDING_PERIOD_SECONDS': '100',
        'BALANCE_TOLERANCE': '0.000005',
        'VERIFY_BALANCES': 'true',
    }, clear=True):
        settings = LedgerSettings()

    assert settings.lot_strategy == CostBasisMethod.HIFO
    assert settings.rounding == "ROUND_DOWN"
    assert settings.holding_period_seconds == 100
    assert settings.balance_tolerance == Decimal("0.000005")
    assert settings.verify_balances is True


def test_unknown_rounding_mode_rejected():
    with patch.dict('os.environ', {'ROUNDING_MODE': 'ROUND_SIDEWAYS'}, clear=True):
        with pytest.raises(ValidationError):
            LedgerSettings()


def test_sweep_settings_from_environment():
    with patch.dict('os.environ', {'SWEEP_MIN_QUANTITY': '2.5', 'SWEEP_RETAIN_QUANTITY': '0.01'}, clear=True):
        settings = SweepSettings()

    assert settings.min_sweep_quantity == Decimal("2.5")
    assert settings.retain_quantity == Decimal("0.01")
    assert settings.max_attempts == 5
