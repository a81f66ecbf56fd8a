"""Unit tests for LotLedger: accounts, lot lifecycle, ordering and invariant checks."""
from decimal import Decimal

import pytest

from rewards_tracker.exceptions import (
    InsufficientQuantityError, InvariantViolationError, LotNotFoundError, UnknownAccountError
)
from rewards_tracker.models import (
    AccountRole, Acquisition, AcquisitionKind, DisposalEvent, LotStatus
)
from rewards_tracker.matcher import DisposalMatcher
from rewards_tracker.store import LotRecord

from tests.fixtures.mock_config import DAY, T0, TEST_STAKE_ACCOUNT, TEST_VOTE_ACCOUNT
from tests.utils import get_lot, open_quantity, seed_lot


def test_register_account_is_idempotent(ledger):
    again = ledger.register_account(TEST_VOTE_ACCOUNT, AccountRole.VOTE)

    assert again.address == TEST_VOTE_ACCOUNT
    assert again.last_reconciled_epoch is None
    assert len([a for a in ledger.list_accounts() if a.address == TEST_VOTE_ACCOUNT]) == 1


def test_register_account_rejects_role_change(ledger):
    with pytest.raises(ValueError):
        ledger.register_account(TEST_VOTE_ACCOUNT, AccountRole.STAKE)


def test_open_lot_quantizes_and_starts_open(ledger):
    lot_id = seed_lot(ledger, TEST_VOTE_ACCOUNT, "1.1234567891", "20.123456789", T0)
    lot = get_lot(ledger, lot_id)

    assert lot_id.startswith("LOT-")
    assert lot.quantity == Decimal("1.123456789")
    assert lot.remaining == lot.quantity
    assert lot.unit_price == Decimal("20.12345679")
    assert lot.status == LotStatus.OPEN
    assert lot.kind == AcquisitionKind.PURCHASE


def test_open_lot_requires_tracked_account(ledger):
    with pytest.raises(UnknownAccountError):
        seed_lot(ledger, "NotTracked1111", 1, 1, T0)


def test_open_lot_rejects_non_positive_quantity(ledger):
    with pytest.raises(ValueError):
        seed_lot(ledger, TEST_VOTE_ACCOUNT, 0, 10, T0)


def test_consume_partial_then_full(ledger):
    lot_id = seed_lot(ledger, TEST_VOTE_ACCOUNT, 10, 5, T0)

    with ledger.transaction(TEST_VOTE_ACCOUNT) as session:
        lot = ledger.consume(session, lot_id, Decimal("4"))
    assert lot.remaining == Decimal("6")
    assert lot.status == LotStatus.PARTIAL

    with ledger.transaction(TEST_VOTE_ACCOUNT) as session:
        lot = ledger.consume(session, lot_id, Decimal("6"))
    assert lot.remaining == Decimal("0")
    assert lot.status == LotStatus.CLOSED
    assert not lot.is_open


def test_consume_more_than_remaining_fails_without_change(ledger):
    lot_id = seed_lot(ledger, TEST_VOTE_ACCOUNT, 10, 5, T0)

    with pytest.raises(InsufficientQuantityError) as exc_info:
        with ledger.transaction(TEST_VOTE_ACCOUNT) as session:
            ledger.consume(session, lot_id, Decimal("10.5"))

    assert exc_info.value.lot_id == lot_id
    assert get_lot(ledger, lot_id).remaining == Decimal("10")


def test_consume_unknown_lot(ledger):
    with pytest.raises(LotNotFoundError):
        with ledger.transaction(TEST_VOTE_ACCOUNT) as session:
            ledger.consume(session, "LOT-MISSING", Decimal("1"))


def test_failed_transaction_leaves_no_lot(ledger):
    with pytest.raises(RuntimeError):
        with ledger.transaction(TEST_VOTE_ACCOUNT) as session:
            ledger.open_lot(session, TEST_VOTE_ACCOUNT, Acquisition(
                timestamp=T0, quantity=Decimal("5"), unit_price=Decimal("1"), kind=AcquisitionKind.PURCHASE
            ))
            raise RuntimeError("interrupted")

    assert open_quantity(ledger, TEST_VOTE_ACCOUNT) == Decimal("0")


def test_list_open_lots_fifo_order_and_as_of(ledger):
    later = seed_lot(ledger, TEST_VOTE_ACCOUNT, 1, 1, T0 + 2 * DAY)
    first = seed_lot(ledger, TEST_VOTE_ACCOUNT, 1, 1, T0)
    same_time = seed_lot(ledger, TEST_VOTE_ACCOUNT, 1, 1, T0)

    with ledger.store.read() as session:
        ordered = [lot.lot_id for lot in ledger.list_open_lots(session, TEST_VOTE_ACCOUNT)]
        as_of = [lot.lot_id for lot in ledger.list_open_lots(session, TEST_VOTE_ACCOUNT, as_of=T0 + DAY)]

    assert ordered == [first, same_time, later]
    assert as_of == [first, same_time]


def test_list_open_lots_explicit_order(ledger):
    a = seed_lot(ledger, TEST_VOTE_ACCOUNT, 1, 1, T0)
    b = seed_lot(ledger, TEST_VOTE_ACCOUNT, 1, 1, T0 + DAY)
    closed = seed_lot(ledger, TEST_VOTE_ACCOUNT, 1, 1, T0 + DAY)
    with ledger.transaction(TEST_VOTE_ACCOUNT) as session:
        ledger.consume(session, closed, Decimal("1"))

    with ledger.store.read() as session:
        lots = ledger.list_open_lots(session, TEST_VOTE_ACCOUNT, order=[b, closed, a])

    assert [lot.lot_id for lot in lots] == [b, a]


def test_list_open_lots_explicit_order_rejects_foreign_lot(ledger):
    foreign = seed_lot(ledger, TEST_STAKE_ACCOUNT, 1, 1, T0)

    with ledger.store.read() as session:
        with pytest.raises(LotNotFoundError):
            ledger.list_open_lots(session, TEST_VOTE_ACCOUNT, order=[foreign])


def test_checkpoint_only_moves_forward(ledger):
    with ledger.transaction(TEST_VOTE_ACCOUNT) as session:
        ledger.advance_checkpoint(session, TEST_VOTE_ACCOUNT, 10)

    with pytest.raises(InvariantViolationError):
        with ledger.transaction(TEST_VOTE_ACCOUNT) as session:
            ledger.advance_checkpoint(session, TEST_VOTE_ACCOUNT, 10)

    with ledger.store.read() as session:
        assert ledger.get_account(session, TEST_VOTE_ACCOUNT).last_reconciled_epoch == 10


def test_conservation_holds_after_disposals(ledger):
    seed_lot(ledger, TEST_VOTE_ACCOUNT, 10, 5, T0)
    seed_lot(ledger, TEST_VOTE_ACCOUNT, 10, 6, T0 + DAY)
    DisposalMatcher(ledger).dispose(DisposalEvent(
        account=TEST_VOTE_ACCOUNT, timestamp=T0 + 2 * DAY, quantity=Decimal("15"), proceeds=Decimal("150")
    ))

    with ledger.store.read() as session:
        ledger.check_conservation(session, TEST_VOTE_ACCOUNT)
        assert ledger.open_quantity(session, TEST_VOTE_ACCOUNT) == Decimal("5")


def test_conservation_detects_untracked_consumption(ledger):
    lot_id = seed_lot(ledger, TEST_VOTE_ACCOUNT, 10, 5, T0)
    with ledger.transaction(TEST_VOTE_ACCOUNT) as session:
        record = session.get(LotRecord, lot_id)
        record.remaining = Decimal("7")
        record.status = LotStatus.PARTIAL.value

    with ledger.store.read() as session:
        with pytest.raises(InvariantViolationError):
            ledger.check_conservation(session, TEST_VOTE_ACCOUNT)


def test_verify_balance_band(ledger):
    seed_lot(ledger, TEST_VOTE_ACCOUNT, 10, 5, T0)

    with ledger.store.read() as session:
        assert ledger.verify_balance(session, TEST_VOTE_ACCOUNT, Decimal("10")) == Decimal("0")
        # Funds already left on chain for an in-flight sweep
        assert ledger.verify_balance(
            session, TEST_VOTE_ACCOUNT, Decimal("7"), outgoing_in_flight=Decimal("3")
        ) == Decimal("-3")
        with pytest.raises(InvariantViolationError):
            ledger.verify_balance(session, TEST_VOTE_ACCOUNT, Decimal("9.5"))
        with pytest.raises(InvariantViolationError):
            ledger.verify_balance(session, TEST_VOTE_ACCOUNT, Decimal("11"))


def test_snapshot_contains_everything(ledger):
    lot_id = seed_lot(ledger, TEST_VOTE_ACCOUNT, 10, 5, T0)

    snapshot = ledger.snapshot()

    assert {a.address for a in snapshot.accounts} >= {TEST_VOTE_ACCOUNT, TEST_STAKE_ACCOUNT}
    assert [lot.lot_id for lot in snapshot.open_lots] == [lot_id]
    assert snapshot.closed_lots == []
    assert snapshot.disposals == []
