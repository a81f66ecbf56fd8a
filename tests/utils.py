"""
Shared helpers for seeding ledgers in tests.
"""
from decimal import Decimal
from typing import List, Optional

from rewards_tracker.ledger import LotLedger
from rewards_tracker.models import Acquisition, AcquisitionKind, Lot, RewardEvent, RewardKind


def seed_lot(ledger: LotLedger, account: str, quantity, unit_price, timestamp: int,
             kind: AcquisitionKind = AcquisitionKind.PURCHASE) -> str:
    """Open a lot in its own transaction and return its id."""
    with ledger.transaction(account) as session:
        return ledger.open_lot(session, account, Acquisition(
            timestamp=timestamp,
            quantity=Decimal(str(quantity)),
            unit_price=Decimal(str(unit_price)),
            kind=kind,
        ))


def get_lot(ledger: LotLedger, lot_id: str) -> Lot:
    with ledger.store.read() as session:
        return ledger.get_lot(session, lot_id)


def lots_of(ledger: LotLedger, account: Optional[str] = None) -> List[Lot]:
    with ledger.store.read() as session:
        return ledger.list_lots(session, account)


def open_quantity(ledger: LotLedger, account: str) -> Decimal:
    with ledger.store.read() as session:
        return ledger.open_quantity(session, account)


def reward(account: str, epoch: int, quantity, kind: RewardKind = RewardKind.VOTE,
           timestamp: Optional[int] = None) -> RewardEvent:
    """Reward event whose epoch-end timestamp defaults to a fixed offset per epoch."""
    return RewardEvent(
        account=account,
        epoch=epoch,
        quantity=Decimal(str(quantity)),
        kind=kind,
        timestamp=timestamp if timestamp is not None else 1_700_000_000 + epoch * 172_800,
    )


def lot_signature(lot: Lot) -> tuple:
    """Everything about a lot except its generated id."""
    return (
        lot.account, lot.timestamp, lot.quantity, lot.unit_price, lot.kind,
        lot.remaining, lot.status, lot.source_ref,
    )
