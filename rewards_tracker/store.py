"""
SQLAlchemy-backed ledger store.

Holds one record stream per tracked account: lots, reward events, disposals with
their consumed portions, sweep tasks and pending orders, plus the account's
reconciliation checkpoint. Every mutation goes through `LedgerStore.transaction`,
which commits all writes together or none of them.
"""

import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Dict, Iterator

from sqlalchemy import (
    Column, ForeignKey, Integer, String, Text, UniqueConstraint, create_engine, event
)
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from rewards_tracker.models import (
    AccountRole, AcquisitionKind, Disposal, DisposalKind, GainType, Lot, LotConsumption,
    LotStatus, OrderSide, OrderState, PendingOrder, SweepState, SweepTask, TrackedAccount
)

logger = logging.getLogger(__name__)

Base = declarative_base()


class DecimalString(TypeDecorator):
    """
    Stores Decimal values as their exact string form. SQLite has no fixed-point
    type and would otherwise round-trip amounts through binary floats.
    """
    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class AccountRecord(Base):
    __tablename__ = "tracked_accounts"

    address = Column(String, primary_key=True)
    role = Column(String(16), nullable=False)
    label = Column(String, nullable=False, default="")
    last_reconciled_epoch = Column(Integer, nullable=True)


class LotRecord(Base):
    __tablename__ = "lots"

    lot_id = Column(String, primary_key=True)
    account = Column(String, ForeignKey("tracked_accounts.address"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False, doc="Per-account insertion order, FIFO tie-breaker")
    acquired_at = Column(Integer, nullable=False)
    quantity = Column(DecimalString, nullable=False)
    unit_price = Column(DecimalString, nullable=False)
    currency = Column(String(8), nullable=False)
    kind = Column(String(32), nullable=False)
    remaining = Column(DecimalString, nullable=False)
    status = Column(String(16), nullable=False)
    origin_lot_id = Column(String, nullable=True)
    source_ref = Column(String, nullable=True)
    notes = Column(Text, nullable=False, default="")


class RewardEventRecord(Base):
    __tablename__ = "reward_events"
    __table_args__ = (UniqueConstraint("account", "epoch", "kind", name="uq_reward_account_epoch_kind"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    account = Column(String, ForeignKey("tracked_accounts.address"), nullable=False, index=True)
    epoch = Column(Integer, nullable=False)
    kind = Column(String(32), nullable=False)
    quantity = Column(DecimalString, nullable=False)
    epoch_end_at = Column(Integer, nullable=False)
    lot_id = Column(String, ForeignKey("lots.lot_id"), nullable=True)


class DisposalRecord(Base):
    __tablename__ = "disposals"
    __table_args__ = (UniqueConstraint("account", "reference", name="uq_disposal_reference"),)

    disposal_id = Column(String, primary_key=True)
    account = Column(String, ForeignKey("tracked_accounts.address"), nullable=False, index=True)
    kind = Column(String(16), nullable=False)
    disposed_at = Column(Integer, nullable=False)
    quantity = Column(DecimalString, nullable=False)
    proceeds = Column(DecimalString, nullable=False)
    cost_basis = Column(DecimalString, nullable=False)
    short_term_gain = Column(DecimalString, nullable=False)
    long_term_gain = Column(DecimalString, nullable=False)
    reference = Column(String, nullable=True)
    notes = Column(Text, nullable=False, default="")

    consumptions = relationship(
        "ConsumptionRecord",
        back_populates="disposal",
        order_by="ConsumptionRecord.id",
        cascade="all, delete-orphan",
    )


class ConsumptionRecord(Base):
    __tablename__ = "lot_consumptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    disposal_id = Column(String, ForeignKey("disposals.disposal_id"), nullable=False, index=True)
    lot_id = Column(String, ForeignKey("lots.lot_id"), nullable=False, index=True)
    quantity = Column(DecimalString, nullable=False)
    cost_basis = Column(DecimalString, nullable=False)
    proceeds = Column(DecimalString, nullable=False)
    gain_type = Column(String(16), nullable=False)
    acquired_at = Column(Integer, nullable=False)

    disposal = relationship("DisposalRecord", back_populates="consumptions")


class SweepTaskRecord(Base):
    __tablename__ = "sweep_tasks"

    task_id = Column(String, primary_key=True)
    source = Column(String, ForeignKey("tracked_accounts.address"), nullable=False, index=True)
    destination = Column(String, nullable=False)
    amount = Column(DecimalString, nullable=True)
    state = Column(String(32), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    correlation_id = Column(String, nullable=False, unique=True)
    stake_correlation_id = Column(String, nullable=False, unique=True)
    last_error = Column(Text, nullable=True)
    resume_state = Column(String(32), nullable=True)
    disposal_id = Column(String, ForeignKey("disposals.disposal_id"), nullable=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)


class OrderRecord(Base):
    __tablename__ = "pending_orders"

    order_id = Column(String, primary_key=True)
    account = Column(String, ForeignKey("tracked_accounts.address"), nullable=False, index=True)
    pair = Column(String(32), nullable=False)
    side = Column(String(8), nullable=False)
    price = Column(DecimalString, nullable=False)
    quantity = Column(DecimalString, nullable=False)
    state = Column(String(16), nullable=False)
    placed_at = Column(Integer, nullable=False)
    disposal_id = Column(String, ForeignKey("disposals.disposal_id"), nullable=True)


# -------------------------------------------------------------------------
# Record <-> model conversion
# -------------------------------------------------------------------------

def account_from_record(record: AccountRecord) -> TrackedAccount:
    return TrackedAccount(
        address=record.address,
        role=AccountRole(record.role),
        label=record.label or "",
        last_reconciled_epoch=record.last_reconciled_epoch,
    )


def lot_from_record(record: LotRecord) -> Lot:
    return Lot(
        lot_id=record.lot_id,
        account=record.account,
        timestamp=record.acquired_at,
        quantity=record.quantity,
        unit_price=record.unit_price,
        kind=AcquisitionKind(record.kind),
        remaining=record.remaining,
        currency=record.currency,
        status=LotStatus(record.status),
        origin_lot_id=record.origin_lot_id,
        source_ref=record.source_ref,
        notes=record.notes or "",
    )


def disposal_from_record(record: DisposalRecord) -> Disposal:
    return Disposal(
        disposal_id=record.disposal_id,
        account=record.account,
        kind=DisposalKind(record.kind),
        timestamp=record.disposed_at,
        quantity=record.quantity,
        proceeds=record.proceeds,
        cost_basis=record.cost_basis,
        short_term_gain=record.short_term_gain,
        long_term_gain=record.long_term_gain,
        consumed_lots=[
            LotConsumption(
                lot_id=c.lot_id,
                quantity=c.quantity,
                cost_basis=c.cost_basis,
                proceeds=c.proceeds,
                gain_type=GainType(c.gain_type),
                acquisition_timestamp=c.acquired_at,
            )
            for c in record.consumptions
        ],
        reference=record.reference,
        notes=record.notes or "",
    )


def sweep_task_from_record(record: SweepTaskRecord) -> SweepTask:
    return SweepTask(
        task_id=record.task_id,
        source=record.source,
        destination=record.destination,
        amount=record.amount,
        state=SweepState(record.state),
        correlation_id=record.correlation_id,
        stake_correlation_id=record.stake_correlation_id,
        attempts=record.attempts,
        last_error=record.last_error,
        resume_state=SweepState(record.resume_state) if record.resume_state else None,
        disposal_id=record.disposal_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def order_from_record(record: OrderRecord) -> PendingOrder:
    return PendingOrder(
        order_id=record.order_id,
        account=record.account,
        pair=record.pair,
        side=OrderSide(record.side),
        price=record.price,
        quantity=record.quantity,
        state=OrderState(record.state),
        placed_at=record.placed_at,
        disposal_id=record.disposal_id,
    )


# -------------------------------------------------------------------------
# Store handle
# -------------------------------------------------------------------------

class LedgerStore:
    """Explicit handle on the persisted ledger, passed to every component."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        is_sqlite = database_url.startswith("sqlite")
        engine_kwargs = {}
        # An in-memory database lives on one connection shared by every thread
        self.shared_connection = is_sqlite and database_url in ("sqlite://", "sqlite:///:memory:")
        if is_sqlite:
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if self.shared_connection:
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **engine_kwargs)
        if is_sqlite:
            _use_immediate_transactions(self.engine)

        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=True, expire_on_commit=False)

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._connection_lock = threading.RLock() if self.shared_connection else None
        logger.debug("Opened ledger store at %s", database_url)

    def _lock_for(self, address: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(address)
            if lock is None:
                lock = threading.RLock()
                self._locks[address] = lock
            return lock

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Serialize sessions on a shared connection; a no-op for pooled engines."""
        if self._connection_lock is None:
            yield
            return
        with self._connection_lock:
            yield

    @contextmanager
    def transaction(self, *addresses: str) -> Iterator[Session]:
        """Open a write transaction scoped to one or more accounts.

        Per-account locks are taken in sorted order, before the shared connection
        lock. The session commits when the block exits normally and rolls back on
        any exception.
        """
        locks = [self._lock_for(address) for address in sorted(set(addresses))]
        for lock in locks:
            lock.acquire()
        try:
            with self._exclusive():
                session = self._session_factory()
                try:
                    yield session
                    session.commit()
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()
        finally:
            for lock in reversed(locks):
                lock.release()

    @contextmanager
    def read(self) -> Iterator[Session]:
        """Open a session for reads only; nothing is committed."""
        with self._exclusive():
            session = self._session_factory()
            try:
                yield session
            finally:
                session.rollback()
                session.close()

    def dispose(self):
        self.engine.dispose()


def _use_immediate_transactions(engine):
    """Take SQLite's write lock at BEGIN so concurrent writers queue instead of deadlocking."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
