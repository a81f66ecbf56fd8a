import logging
import uuid
from collections import defaultdict
from decimal import Decimal
from typing import ContextManager, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from rewards_tracker.config import LedgerSettings
from rewards_tracker.exceptions import (
    InsufficientQuantityError, InvariantViolationError, LotNotFoundError, UnknownAccountError
)
from rewards_tracker.fixed_point import ZERO, FixedPoint
from rewards_tracker.models import (
    AccountRole, Acquisition, Disposal, LedgerSnapshot, Lot, LotStatus, OrderSide, OrderState, RewardEvent,
    SweepState, TrackedAccount
)
from rewards_tracker.store import (
    AccountRecord, ConsumptionRecord, DisposalRecord, LedgerStore, LotRecord, OrderRecord, RewardEventRecord,
    SweepTaskRecord, account_from_record, disposal_from_record, lot_from_record,
    sweep_task_from_record
)

logger = logging.getLogger(__name__)

# Sweep tasks in these states still hold a claim on their source account's quantity
OPEN_SWEEP_STATES = [s.value for s in SweepState if s not in (SweepState.COMPLETED, SweepState.CANCELLED)]


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


class LotLedger:
    """
    Authoritative store of tax lots per tracked account.

    Lots are created append-only and mutated only by consumption. Methods that
    write take an open session from `transaction()` so callers can commit a lot
    mutation together with the record that caused it.
    """

    def __init__(self, store: LedgerStore, settings: Optional[LedgerSettings] = None):
        self.store = store
        self.config = settings or LedgerSettings()
        self.fixed = FixedPoint.from_settings(self.config)

    def transaction(self, *addresses: str) -> ContextManager[Session]:
        return self.store.transaction(*addresses)

    # -------------------------------------------------------------------------
    # Tracked accounts
    # -------------------------------------------------------------------------

    def register_account(self, address: str, role: AccountRole, label: str = "") -> TrackedAccount:
        """Start tracking an address. Registering an existing address is a no-op."""
        with self.transaction(address) as session:
            record = session.get(AccountRecord, address)
            if record is not None:
                if record.role != role.value:
                    raise ValueError(f"{address} is already tracked as a {record.role} account")
                return account_from_record(record)

            record = AccountRecord(address=address, role=role.value, label=label, last_reconciled_epoch=None)
            session.add(record)
            logger.info("Tracking %s account %s %s", role.value, address, label)
            return account_from_record(record)

    def _account_record(self, session: Session, address: str) -> AccountRecord:
        record = session.get(AccountRecord, address)
        if record is None:
            raise UnknownAccountError(f"{address} is not a tracked account")
        return record

    def get_account(self, session: Session, address: str) -> TrackedAccount:
        return account_from_record(self._account_record(session, address))

    def list_accounts(self) -> List[TrackedAccount]:
        with self.store.read() as session:
            records = session.query(AccountRecord).order_by(AccountRecord.address).all()
            return [account_from_record(r) for r in records]

    def advance_checkpoint(self, session: Session, address: str, epoch: int):
        """Move the reconciliation checkpoint forward. It never moves backwards."""
        record = self._account_record(session, address)
        last = record.last_reconciled_epoch
        if last is not None and epoch <= last:
            raise InvariantViolationError(
                f"Checkpoint for {address} would move from epoch {last} to {epoch}"
            )
        record.last_reconciled_epoch = epoch

    # -------------------------------------------------------------------------
    # Lots
    # -------------------------------------------------------------------------

    def open_lot(self, session: Session, account: str, acquisition: Acquisition) -> str:
        """Create a lot holding the full acquired quantity. Returns its id."""
        self._account_record(session, account)
        quantity = self.fixed.quantity(acquisition.quantity)
        unit_price = self.fixed.price(acquisition.unit_price)
        if quantity <= 0:
            raise ValueError(f"Lot quantity must be positive, got {quantity}")
        if unit_price < 0:
            raise ValueError(f"Lot unit price cannot be negative, got {unit_price}")

        last_sequence = (
            session.query(func.max(LotRecord.sequence)).filter(LotRecord.account == account).scalar()
        )
        lot_id = new_id("LOT")
        session.add(LotRecord(
            lot_id=lot_id,
            account=account,
            sequence=(last_sequence or 0) + 1,
            acquired_at=acquisition.timestamp,
            quantity=quantity,
            unit_price=unit_price,
            currency=acquisition.currency,
            kind=acquisition.kind.value,
            remaining=quantity,
            status=LotStatus.OPEN.value,
            origin_lot_id=acquisition.origin_lot_id,
            source_ref=acquisition.source_ref,
            notes=acquisition.notes,
        ))
        session.flush()
        logger.debug("Opened %s on %s: %s @ %s (%s)", lot_id, account, quantity, unit_price, acquisition.kind.value)
        return lot_id

    def get_lot(self, session: Session, lot_id: str) -> Lot:
        record = session.get(LotRecord, lot_id)
        if record is None:
            raise LotNotFoundError(f"Lot {lot_id} not found")
        return lot_from_record(record)

    def consume(self, session: Session, lot_id: str, quantity: Decimal) -> Lot:
        """Reduce a lot's remaining quantity, closing it when it reaches zero."""
        quantity = self.fixed.quantity(quantity)
        if quantity <= 0:
            raise ValueError(f"Consumed quantity must be positive, got {quantity}")

        record = session.get(LotRecord, lot_id)
        if record is None:
            raise LotNotFoundError(f"Lot {lot_id} not found")
        if quantity > record.remaining:
            raise InsufficientQuantityError(lot_id, quantity, record.remaining)

        record.remaining = record.remaining - quantity
        record.status = LotStatus.CLOSED.value if record.remaining == 0 else LotStatus.PARTIAL.value
        session.flush()
        return lot_from_record(record)

    def list_open_lots(self, session: Session, account: str, as_of: Optional[int] = None,
                       order: Optional[Sequence[str]] = None) -> List[Lot]:
        """Open lots of an account.

        Without `order` the lots come back oldest first (FIFO). With `order` the
        designated lots come back in the caller's order; designated lots that are
        closed or acquired after `as_of` are left out, unknown ids raise.
        """
        query = session.query(LotRecord).filter(LotRecord.account == account)
        if as_of is not None:
            query = query.filter(LotRecord.acquired_at <= as_of)

        if order is None:
            records = (
                query.filter(LotRecord.status != LotStatus.CLOSED.value)
                .order_by(LotRecord.acquired_at, LotRecord.sequence)
                .all()
            )
            return [lot_from_record(r) for r in records]

        wanted = list(dict.fromkeys(order))
        known = {
            r.lot_id for r in
            session.query(LotRecord.lot_id).filter(LotRecord.account == account, LotRecord.lot_id.in_(wanted))
        }
        missing = [lot_id for lot_id in wanted if lot_id not in known]
        if missing:
            raise LotNotFoundError(f"Lots {', '.join(missing)} do not belong to {account}")

        by_id = {r.lot_id: r for r in query.filter(LotRecord.lot_id.in_(wanted)).all()}
        return [
            lot_from_record(by_id[lot_id]) for lot_id in wanted
            if lot_id in by_id and by_id[lot_id].status != LotStatus.CLOSED.value
        ]

    def list_lots(self, session: Session, account: Optional[str] = None, include_closed: bool = True) -> List[Lot]:
        query = session.query(LotRecord)
        if account is not None:
            query = query.filter(LotRecord.account == account)
        if not include_closed:
            query = query.filter(LotRecord.status != LotStatus.CLOSED.value)
        records = query.order_by(LotRecord.account, LotRecord.acquired_at, LotRecord.sequence).all()
        return [lot_from_record(r) for r in records]

    def open_quantity(self, session: Session, account: str) -> Decimal:
        return sum((lot.remaining for lot in self.list_open_lots(session, account)), ZERO)

    def committed_quantity(self, session: Session, account: str, exclude: Optional[str] = None) -> Decimal:
        """Open quantity already promised to open sweep tasks and open sell orders.

        `exclude` names the sweep task or order whose own claim should not count,
        so settling it can consume the quantity it reserved.
        """
        sweeps = session.query(SweepTaskRecord).filter(
            SweepTaskRecord.source == account,
            SweepTaskRecord.state.in_(OPEN_SWEEP_STATES),
            SweepTaskRecord.amount.isnot(None),
        )
        orders = session.query(OrderRecord).filter(
            OrderRecord.account == account,
            OrderRecord.side == OrderSide.SELL.value,
            OrderRecord.state == OrderState.OPEN.value,
        )
        committed = sum((r.amount for r in sweeps if r.task_id != exclude), ZERO)
        committed += sum((r.quantity for r in orders if r.order_id != exclude), ZERO)
        return committed

    def free_quantity(self, session: Session, account: str, exclude: Optional[str] = None) -> Decimal:
        """Open quantity not committed to a sweep or an open order."""
        return self.open_quantity(session, account) - self.committed_quantity(session, account, exclude)

    # -------------------------------------------------------------------------
    # Reward events
    # -------------------------------------------------------------------------

    def has_reward_event(self, session: Session, event: RewardEvent) -> bool:
        return session.query(RewardEventRecord.id).filter(
            RewardEventRecord.account == event.account,
            RewardEventRecord.epoch == event.epoch,
            RewardEventRecord.kind == event.kind.value,
        ).first() is not None

    def record_reward_event(self, session: Session, event: RewardEvent, lot_id: Optional[str]):
        session.add(RewardEventRecord(
            account=event.account,
            epoch=event.epoch,
            kind=event.kind.value,
            quantity=self.fixed.quantity(event.quantity),
            epoch_end_at=event.timestamp,
            lot_id=lot_id,
        ))
        session.flush()

    # -------------------------------------------------------------------------
    # Disposals
    # -------------------------------------------------------------------------

    def record_disposal(self, session: Session, disposal: Disposal):
        """Persist a disposal and its consumed portions."""
        taken = sum((c.quantity for c in disposal.consumed_lots), ZERO)
        if taken != disposal.quantity:
            raise InvariantViolationError(
                f"Disposal {disposal.disposal_id} takes {taken} from lots but disposes {disposal.quantity}"
            )

        record = DisposalRecord(
            disposal_id=disposal.disposal_id,
            account=disposal.account,
            kind=disposal.kind.value,
            disposed_at=disposal.timestamp,
            quantity=disposal.quantity,
            proceeds=disposal.proceeds,
            cost_basis=disposal.cost_basis,
            short_term_gain=disposal.short_term_gain,
            long_term_gain=disposal.long_term_gain,
            reference=disposal.reference,
            notes=disposal.notes,
        )
        for c in disposal.consumed_lots:
            record.consumptions.append(ConsumptionRecord(
                lot_id=c.lot_id,
                quantity=c.quantity,
                cost_basis=c.cost_basis,
                proceeds=c.proceeds,
                gain_type=c.gain_type.value,
                acquired_at=c.acquisition_timestamp,
            ))
        session.add(record)
        session.flush()

    def get_disposal(self, session: Session, disposal_id: str) -> Disposal:
        record = session.get(DisposalRecord, disposal_id)
        if record is None:
            raise LookupError(f"Disposal {disposal_id} not found")
        return disposal_from_record(record)

    def get_disposal_by_reference(self, session: Session, account: str, reference: str) -> Optional[Disposal]:
        record = session.query(DisposalRecord).filter(
            DisposalRecord.account == account,
            DisposalRecord.reference == reference,
        ).first()
        return disposal_from_record(record) if record else None

    def list_disposals(self, session: Session, account: Optional[str] = None) -> List[Disposal]:
        query = session.query(DisposalRecord)
        if account is not None:
            query = query.filter(DisposalRecord.account == account)
        records = query.order_by(DisposalRecord.disposed_at, DisposalRecord.disposal_id).all()
        return [disposal_from_record(r) for r in records]

    # -------------------------------------------------------------------------
    # Invariant checks
    # -------------------------------------------------------------------------

    def check_conservation(self, session: Session, address: str):
        """Every lot's consumed quantity must equal what its disposals recorded."""
        consumed: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        rows = (
            session.query(ConsumptionRecord.lot_id, ConsumptionRecord.quantity)
            .join(LotRecord, LotRecord.lot_id == ConsumptionRecord.lot_id)
            .filter(LotRecord.account == address)
        )
        for lot_id, quantity in rows:
            consumed[lot_id] += quantity

        for lot in self.list_lots(session, address):
            if lot.remaining < 0:
                raise InvariantViolationError(f"Lot {lot.lot_id} has negative remaining quantity {lot.remaining}")
            if lot.quantity - lot.remaining != consumed[lot.lot_id]:
                raise InvariantViolationError(
                    f"Lot {lot.lot_id} of {address} lost {lot.quantity - lot.remaining} "
                    f"but disposals recorded {consumed[lot.lot_id]}"
                )
            if (lot.status == LotStatus.CLOSED) != (lot.remaining == 0):
                raise InvariantViolationError(f"Lot {lot.lot_id} status {lot.status.value} disagrees with remaining {lot.remaining}")

    def verify_balance(self, session: Session, address: str, observed: Decimal,
                       outgoing_in_flight: Decimal = ZERO, incoming_in_flight: Decimal = ZERO) -> Decimal:
        """Compare open lot quantity with the observed on-chain balance.

        Quantity committed to in-flight sweeps may or may not have moved on chain
        yet, so the observed balance must fall inside the band those sweeps span.
        Returns the difference between observed and ledger quantity.
        """
        open_quantity = self.open_quantity(session, address)
        tolerance = self.config.balance_tolerance
        lower = open_quantity - outgoing_in_flight - tolerance
        upper = open_quantity + incoming_in_flight + tolerance
        if not lower <= observed <= upper:
            raise InvariantViolationError(
                f"{address}: ledger holds {open_quantity} in open lots "
                f"(in flight out {outgoing_in_flight}, in {incoming_in_flight}) but chain reports {observed}"
            )
        return observed - open_quantity

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def snapshot(self) -> LedgerSnapshot:
        """Read-only copy of every account's lots, disposals and sweep tasks."""
        with self.store.read() as session:
            accounts = [account_from_record(r) for r in session.query(AccountRecord).order_by(AccountRecord.address)]
            tasks = [
                sweep_task_from_record(r)
                for r in session.query(SweepTaskRecord).order_by(SweepTaskRecord.created_at, SweepTaskRecord.task_id)
            ]
            return LedgerSnapshot(
                accounts=accounts,
                lots=self.list_lots(session),
                disposals=self.list_disposals(session),
                sweep_tasks=tasks,
            )
