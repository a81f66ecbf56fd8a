"""
Sweep-stake coordinator.

A sweep moves reward proceeds from a reward-collecting account into a stake
account and delegates them:

    Pending -> RewardCollected -> DepositInitiated -> DepositConfirmed
            -> StakeInitiated -> Completed

Every state is persisted, so a task interrupted at any point is re-entered on the
next run instead of blocking in-process. Transfer and stake instructions carry
correlation ids and are only ever re-issued under the same id. On completion the
quantity leaves the source lots as a non-taxable `sweep` disposal and arrives on
the destination as `transfer-in` lots keeping the original basis and acquisition
time.
"""

import logging
import time
import uuid
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from rewards_tracker.clients.chain import ChainObserver
from rewards_tracker.clients.orchestrator import Orchestrator
from rewards_tracker.config import SweepSettings
from rewards_tracker.exceptions import (
    InvalidTransitionError, InvariantViolationError, LedgerError, UnavailableError
)
from rewards_tracker.fixed_point import ZERO
from rewards_tracker.ledger import OPEN_SWEEP_STATES, LotLedger, new_id
from rewards_tracker.matcher import DisposalMatcher
from rewards_tracker.models import (
    Acquisition, AcquisitionKind, DisposalEvent, DisposalKind, SelectionPolicy, SweepState, SweepTask
)
from rewards_tracker.notifier import Notifier
from rewards_tracker.retry import call_with_retry
from rewards_tracker.store import SweepTaskRecord, sweep_task_from_record

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[SweepState, Set[SweepState]] = {
    SweepState.PENDING: {SweepState.REWARD_COLLECTED, SweepState.FAILED, SweepState.CANCELLED},
    SweepState.REWARD_COLLECTED: {SweepState.DEPOSIT_INITIATED, SweepState.FAILED, SweepState.CANCELLED},
    SweepState.DEPOSIT_INITIATED: {SweepState.DEPOSIT_CONFIRMED, SweepState.FAILED},
    SweepState.DEPOSIT_CONFIRMED: {SweepState.STAKE_INITIATED, SweepState.FAILED},
    SweepState.STAKE_INITIATED: {SweepState.COMPLETED, SweepState.FAILED},
    SweepState.FAILED: {
        SweepState.PENDING, SweepState.REWARD_COLLECTED, SweepState.DEPOSIT_INITIATED,
        SweepState.DEPOSIT_CONFIRMED, SweepState.STAKE_INITIATED, SweepState.CANCELLED,
    },
    SweepState.COMPLETED: set(),
    SweepState.CANCELLED: set(),
}


class SweepCoordinator:
    """Drives sweep tasks through their persisted state machine."""

    def __init__(self, ledger: LotLedger, matcher: DisposalMatcher, chain: ChainObserver,
                 orchestrator: Orchestrator, settings: Optional[SweepSettings] = None,
                 notifier: Optional[Notifier] = None, clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.matcher = matcher
        self.chain = chain
        self.orchestrator = orchestrator
        self.config = settings or SweepSettings()
        self.notifier = notifier
        self.clock = clock

        self._steps = {
            SweepState.PENDING: self._collect,
            SweepState.REWARD_COLLECTED: self._initiate_deposit,
            SweepState.DEPOSIT_INITIATED: self._confirm_deposit,
            SweepState.DEPOSIT_CONFIRMED: self._initiate_stake,
            SweepState.STAKE_INITIATED: self._confirm_stake,
        }

    def _now(self) -> int:
        return int(self.clock())

    def _retry(self, func, *args, label: str):
        return call_with_retry(
            func, *args,
            label=label,
            max_tries=self.config.max_attempts,
            factor=self.config.backoff_factor,
            max_value=self.config.backoff_max,
        )

    # -------------------------------------------------------------------------
    # Task records
    # -------------------------------------------------------------------------

    def _load(self, session: Session, task_id: str) -> SweepTaskRecord:
        record = session.get(SweepTaskRecord, task_id)
        if record is None:
            raise LookupError(f"Sweep task {task_id} not found")
        return record

    def _open_tasks(self, session: Session, source: Optional[str] = None) -> List[SweepTaskRecord]:
        query = session.query(SweepTaskRecord).filter(SweepTaskRecord.state.in_(OPEN_SWEEP_STATES))
        if source is not None:
            query = query.filter(SweepTaskRecord.source == source)
        return query.order_by(SweepTaskRecord.created_at, SweepTaskRecord.task_id).all()

    def _transition(self, record: SweepTaskRecord, state: SweepState):
        current = SweepState(record.state)
        if state not in TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Sweep task {record.task_id} cannot move from {current.value} to {state.value}"
            )
        logger.info("Sweep %s (%s): %s -> %s", record.task_id, record.source, current.value, state.value)
        record.state = state.value
        record.updated_at = self._now()

    def get_task(self, task_id: str) -> SweepTask:
        with self.ledger.store.read() as session:
            return sweep_task_from_record(self._load(session, task_id))

    def list_tasks(self, source: Optional[str] = None, open_only: bool = False) -> List[SweepTask]:
        with self.ledger.store.read() as session:
            if open_only:
                records = self._open_tasks(session, source)
            else:
                query = session.query(SweepTaskRecord)
                if source is not None:
                    query = query.filter(SweepTaskRecord.source == source)
                records = query.order_by(SweepTaskRecord.created_at, SweepTaskRecord.task_id).all()
            return [sweep_task_from_record(r) for r in records]

    def create_task(self, source: str, destination: str, amount: Optional[Decimal] = None) -> SweepTask:
        """
        Create a sweep from `source` to `destination`.

        Only one unfinished task may exist per source; asking again returns it.
        With no amount the task sweeps everything above the retain quantity.
        """
        if source == destination:
            raise ValueError("Sweep source and destination must differ")
        if amount is not None:
            amount = self.ledger.fixed.quantity(amount)
            if amount <= 0:
                raise ValueError(f"Sweep amount must be positive, got {amount}")

        with self.ledger.transaction(source) as session:
            self.ledger.get_account(session, source)
            self.ledger.get_account(session, destination)

            existing = self._open_tasks(session, source)
            if existing:
                logger.info("Sweep %s already open for %s", existing[0].task_id, source)
                return sweep_task_from_record(existing[0])

            now = self._now()
            correlation_id = f"sweep-{uuid.uuid4().hex}"
            record = SweepTaskRecord(
                task_id=new_id("SWP"),
                source=source,
                destination=destination,
                amount=amount,
                state=SweepState.PENDING.value,
                attempts=0,
                correlation_id=correlation_id,
                stake_correlation_id=f"{correlation_id}-stake",
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            logger.info("Created sweep %s: %s -> %s (%s)", record.task_id, source, destination, amount or "all")
            return sweep_task_from_record(record)

    # -------------------------------------------------------------------------
    # Quantity accounting
    # -------------------------------------------------------------------------

    def harvestable(self, session: Session, task: SweepTaskRecord) -> Decimal:
        """Open quantity on the source not claimed by other tasks, open sell orders or the retain reserve."""
        return self.ledger.free_quantity(session, task.source, exclude=task.task_id) - self.config.retain_quantity

    def in_flight(self, session: Session, address: str) -> Tuple[Decimal, Decimal]:
        """Quantity that may be moving out of and into `address` on chain, not yet in its lots."""
        outgoing = ZERO
        incoming = ZERO
        for record in self._open_tasks(session):
            if record.amount is None or not self._funds_may_have_moved(record):
                continue
            if record.source == address:
                outgoing += record.amount
            if record.destination == address:
                incoming += record.amount
        return outgoing, incoming

    @staticmethod
    def _funds_may_have_moved(record: SweepTaskRecord) -> bool:
        state = SweepState(record.state)
        if state == SweepState.FAILED:
            state = SweepState(record.resume_state) if record.resume_state else SweepState.PENDING
        if state.funds_in_flight:
            return True
        # A transfer was submitted but never acknowledged
        return state == SweepState.REWARD_COLLECTED and record.attempts > 0

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _collect(self, task: SweepTask) -> bool:
        with self.ledger.transaction(task.source) as session:
            record = self._load(session, task.task_id)
            available = self.harvestable(session, record)
            amount = record.amount if record.amount is not None else self.ledger.fixed.quantity(available)
            if available < self.config.min_sweep_quantity or available < amount:
                logger.debug(
                    "Sweep %s waiting: %s harvestable on %s, need %s",
                    task.task_id, available, task.source, max(amount, self.config.min_sweep_quantity)
                )
                return False
            record.amount = amount
            self._transition(record, SweepState.REWARD_COLLECTED)
        return True

    def _count_attempt(self, task_id: str, source: str):
        with self.ledger.transaction(source) as session:
            record = self._load(session, task_id)
            record.attempts += 1
            record.updated_at = self._now()

    def _initiate_deposit(self, task: SweepTask) -> bool:
        self._count_attempt(task.task_id, task.source)
        result = self._retry(
            self.orchestrator.initiate_transfer,
            task.correlation_id, task.source, task.destination, task.amount,
            label=f"transfer {task.correlation_id}",
        )
        if result.duplicate:
            logger.info("Transfer %s was already submitted", task.correlation_id)
        self._move(task, SweepState.DEPOSIT_INITIATED)
        return True

    def _confirm_deposit(self, task: SweepTask) -> bool:
        confirmed = self._retry(self.chain.transfer_confirmed, task.correlation_id, label=f"confirm {task.correlation_id}")
        if not confirmed:
            return False
        self._move(task, SweepState.DEPOSIT_CONFIRMED)
        return True

    def _initiate_stake(self, task: SweepTask) -> bool:
        self._count_attempt(task.task_id, task.source)
        self._retry(
            self.orchestrator.initiate_stake,
            task.stake_correlation_id, task.destination, task.amount,
            label=f"stake {task.stake_correlation_id}",
        )
        self._move(task, SweepState.STAKE_INITIATED)
        return True

    def _confirm_stake(self, task: SweepTask) -> bool:
        confirmed = self._retry(
            self.chain.transfer_confirmed, task.stake_correlation_id, label=f"confirm {task.stake_correlation_id}"
        )
        if not confirmed:
            return False
        self._complete(task)
        return True

    def _move(self, task: SweepTask, state: SweepState):
        with self.ledger.transaction(task.source) as session:
            self._transition(self._load(session, task.task_id), state)

    def _complete(self, task: SweepTask):
        """Retire the swept quantity from the source and open matching lots on the destination."""
        with self.ledger.transaction(task.source, task.destination) as session:
            record = self._load(session, task.task_id)
            if record.state != SweepState.STAKE_INITIATED.value:
                return

            event = DisposalEvent(
                account=task.source,
                timestamp=self._now(),
                quantity=record.amount,
                kind=DisposalKind.SWEEP,
                reference=f"sweep:{task.task_id}",
                notes=f"Swept to {task.destination}",
            )
            disposal = self.matcher.dispose_in(session, event, SelectionPolicy.fifo(), release=task.task_id)
            for portion in disposal.consumed_lots:
                source_lot = self.ledger.get_lot(session, portion.lot_id)
                self.ledger.open_lot(session, task.destination, Acquisition(
                    timestamp=portion.acquisition_timestamp,
                    quantity=portion.quantity,
                    unit_price=source_lot.unit_price,
                    kind=AcquisitionKind.TRANSFER_IN,
                    currency=source_lot.currency,
                    origin_lot_id=portion.lot_id,
                    source_ref=task.correlation_id,
                    notes=f"Sweep {task.task_id} from {task.source}",
                ))

            record.disposal_id = disposal.disposal_id
            record.last_error = None
            self._transition(record, SweepState.COMPLETED)

        self._notify(f"Sweep {task.task_id} completed: {task.amount} moved {task.source} -> {task.destination}")

    def _fail(self, task: SweepTask, error: Exception) -> SweepTask:
        with self.ledger.transaction(task.source) as session:
            record = self._load(session, task.task_id)
            record.resume_state = record.state
            record.last_error = str(error)
            self._transition(record, SweepState.FAILED)
            failed = sweep_task_from_record(record)

        logger.error("Sweep %s failed in %s: %s", task.task_id, task.state.value, error)
        self._notify(f"Sweep {task.task_id} ({task.source}) failed in {task.state.value}: {error}")
        return failed

    def _notify(self, message: str):
        if self.notifier is not None:
            self.notifier.send(message)

    # -------------------------------------------------------------------------
    # Driving tasks
    # -------------------------------------------------------------------------

    def step(self, task_id: str) -> Tuple[SweepTask, bool]:
        """
        Attempt a single transition. Returns the task and whether it moved.

        Transient errors that outlast the retry budget move the task to Failed.
        Ledger errors also fail the task and are re-raised to the caller.
        """
        task = self.get_task(task_id)
        if task.state.is_terminal:
            return task, False

        try:
            progressed = self._steps[task.state](task)
        except UnavailableError as e:
            return self._fail(task, e), True
        except InvariantViolationError:
            raise
        except LedgerError as e:
            self._fail(task, e)
            raise
        return self.get_task(task_id), progressed

    def advance(self, task_id: str) -> SweepTask:
        """Move a task forward until it waits on the chain or threshold, or ends."""
        while True:
            task, progressed = self.step(task_id)
            if task.state.is_terminal or not progressed:
                return task

    def resume(self, task_id: str) -> SweepTask:
        """Return a failed task to the state it failed in."""
        with self.ledger.store.read() as session:
            source = self._load(session, task_id).source
        with self.ledger.transaction(source) as session:
            record = self._load(session, task_id)
            if record.state != SweepState.FAILED.value:
                raise InvalidTransitionError(f"Sweep task {task_id} is {record.state}, not Failed")
            target = SweepState(record.resume_state) if record.resume_state else SweepState.PENDING
            self._transition(record, target)
            record.resume_state = None
            return sweep_task_from_record(record)

    def cancel(self, task_id: str) -> SweepTask:
        """Abort a task whose funds have not started moving."""
        with self.ledger.store.read() as session:
            source = self._load(session, task_id).source
        with self.ledger.transaction(source) as session:
            record = self._load(session, task_id)
            state = SweepState(record.state)
            effective = state
            if state == SweepState.FAILED:
                effective = SweepState(record.resume_state) if record.resume_state else SweepState.PENDING
            if effective not in (SweepState.PENDING, SweepState.REWARD_COLLECTED) or record.attempts > 0:
                raise InvalidTransitionError(
                    f"Sweep task {task_id} cannot be cancelled in {state.value}: funds may have moved"
                )
            self._transition(record, SweepState.CANCELLED)
            return sweep_task_from_record(record)

    def run(self, resume_failed: bool = True) -> List[SweepTask]:
        """Advance every unfinished task once. Returns the tasks' resulting states."""
        with self.ledger.store.read() as session:
            task_ids = [r.task_id for r in self._open_tasks(session)]

        results = []
        for task_id in task_ids:
            task = self.get_task(task_id)
            if task.state == SweepState.FAILED:
                if not resume_failed:
                    results.append(task)
                    continue
                self.resume(task_id)
            try:
                results.append(self.advance(task_id))
            except InvariantViolationError:
                raise
            except LedgerError as e:
                logger.error("Sweep %s stopped: %s", task_id, e)
                results.append(self.get_task(task_id))
        return results
