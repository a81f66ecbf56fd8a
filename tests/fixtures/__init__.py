"""Shared test fixtures for rewards ledger tests."""
# Mock sheets fixtures
from .mock_sheets import mock_sheets

# Fake collaborator fixtures
from .mock_clients import chain, notifier, orchestrator, price_client

# Mock config fixtures and constants
from .mock_config import (
    ledger,
    ledger_factory,
    ledger_settings,
    provider_settings,
    sweep_settings,
    # Test constants
    DAY,
    T0,
    TEST_GOOGLE_CREDENTIALS_PATH,
    TEST_HOLDING_PERIOD_SECONDS,
    TEST_IDENTITY_ACCOUNT,
    TEST_MAX_TRIES,
    TEST_REPORT_SHEET_ID,
    TEST_STAKE_ACCOUNT,
    TEST_SWEEP_MAX_ATTEMPTS,
    TEST_VOTE_ACCOUNT,
)

__all__ = [
    # Fixtures
    'mock_sheets',
    'chain',
    'notifier',
    'orchestrator',
    'price_client',
    'ledger',
    'ledger_factory',
    'ledger_settings',
    'provider_settings',
    'sweep_settings',
    # Constants
    'DAY',
    'T0',
    'TEST_GOOGLE_CREDENTIALS_PATH',
    'TEST_HOLDING_PERIOD_SECONDS',
    'TEST_IDENTITY_ACCOUNT',
    'TEST_MAX_TRIES',
    'TEST_REPORT_SHEET_ID',
    'TEST_STAKE_ACCOUNT',
    'TEST_SWEEP_MAX_ATTEMPTS',
    'TEST_VOTE_ACCOUNT',
]
