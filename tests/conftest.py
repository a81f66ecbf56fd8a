from tests.fixtures import (  # noqa: F401
    chain,
    ledger,
    ledger_factory,
    ledger_settings,
    mock_sheets,
    notifier,
    orchestrator,
    price_client,
    provider_settings,
    sweep_settings,
)
