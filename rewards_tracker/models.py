from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Dict, Any, Tuple, Sequence
import json


class AccountRole(Enum):
    """Role of a tracked on-chain address."""
    SYSTEM = "system"
    STAKE = "stake"
    VOTE = "vote"


class AcquisitionKind(Enum):
    """How a lot came into the account."""
    PURCHASE = "purchase"
    STAKING_INCOME = "staking-income"
    VOTING_INCOME = "voting-income"
    RENT_FEE_INCOME = "rent-fee-income"
    TRANSFER_IN = "transfer-in"

    @property
    def is_income(self) -> bool:
        return self in (
            AcquisitionKind.STAKING_INCOME,
            AcquisitionKind.VOTING_INCOME,
            AcquisitionKind.RENT_FEE_INCOME,
        )


class RewardKind(Enum):
    """Source of an epoch reward credit."""
    VOTE = "vote"
    STAKE = "stake"
    VALIDATOR_IDENTITY = "validator-identity"

    @property
    def acquisition_kind(self) -> AcquisitionKind:
        return _REWARD_ACQUISITION_KINDS[self]


_REWARD_ACQUISITION_KINDS = {
    RewardKind.VOTE: AcquisitionKind.VOTING_INCOME,
    RewardKind.STAKE: AcquisitionKind.STAKING_INCOME,
    RewardKind.VALIDATOR_IDENTITY: AcquisitionKind.RENT_FEE_INCOME,
}


class LotStatus(Enum):
    """Status of a lot."""
    OPEN = "Open"
    PARTIAL = "Partial"
    CLOSED = "Closed"


class GainType(Enum):
    """Capital gain type based on holding period."""
    SHORT_TERM = "Short-term"
    LONG_TERM = "Long-term"


class CostBasisMethod(Enum):
    """Lot selection method for disposals."""
    FIFO = "FIFO"
    HIFO = "HIFO"
    SPECIFIC = "SPECIFIC"


class DisposalKind(Enum):
    """What retired the quantity."""
    SELL = "sell"
    SWAP = "swap"
    TRANSFER = "transfer"
    SWEEP = "sweep"

    @property
    def taxable(self) -> bool:
        return self in (DisposalKind.SELL, DisposalKind.SWAP)


class SweepState(Enum):
    """States of a sweep-stake task."""
    PENDING = "Pending"
    REWARD_COLLECTED = "RewardCollected"
    DEPOSIT_INITIATED = "DepositInitiated"
    DEPOSIT_CONFIRMED = "DepositConfirmed"
    STAKE_INITIATED = "StakeInitiated"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SweepState.COMPLETED, SweepState.FAILED, SweepState.CANCELLED)

    @property
    def funds_in_flight(self) -> bool:
        """Funds may have left the source but no destination lot exists yet."""
        return self in (
            SweepState.DEPOSIT_INITIATED,
            SweepState.DEPOSIT_CONFIRMED,
            SweepState.STAKE_INITIATED,
        )


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderState(Enum):
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"


def format_timestamp(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S')


@dataclass
class TrackedAccount:
    """An on-chain address whose lots the ledger owns."""
    address: str
    role: AccountRole
    label: str = ""
    last_reconciled_epoch: Optional[int] = None


@dataclass(frozen=True)
class Acquisition:
    """Everything needed to open a lot."""
    timestamp: int
    quantity: Decimal
    unit_price: Decimal
    kind: AcquisitionKind
    currency: str = "USD"
    origin_lot_id: Optional[str] = None
    source_ref: Optional[str] = None
    notes: str = ""


@dataclass
class Lot:
    """Represents a tax lot tracked FIFO/HIFO/specific-id."""
    lot_id: str
    account: str
    timestamp: int
    quantity: Decimal  # Original amount
    unit_price: Decimal  # Reference currency per unit at acquisition
    kind: AcquisitionKind
    remaining: Decimal  # Remaining amount after partial consumption
    currency: str = "USD"
    status: LotStatus = LotStatus.OPEN
    origin_lot_id: Optional[str] = None
    source_ref: Optional[str] = None
    notes: str = ""

    @property
    def is_open(self) -> bool:
        return self.remaining > 0

    @property
    def date(self) -> str:
        return format_timestamp(self.timestamp)

    @property
    def cost_basis(self) -> Decimal:
        return self.quantity * self.unit_price

    @property
    def cost_basis_remaining(self) -> Decimal:
        """Cost basis for the remaining quantity."""
        return self.remaining * self.unit_price

    def long_term_date(self, holding_period_seconds: int) -> str:
        """Date when the lot becomes eligible for long-term treatment."""
        return datetime.fromtimestamp(
            self.timestamp + holding_period_seconds, tz=timezone.utc
        ).strftime('%Y-%m-%d')

    def to_sheet_row(self) -> List[Any]:
        """Convert to Google Sheets row."""
        return [
            self.lot_id,
            self.account,
            self.date,
            self.timestamp,
            self.kind.value,
            str(self.quantity),
            str(self.remaining),
            str(self.unit_price),
            self.currency,
            str(self.cost_basis_remaining),
            self.status.value,
            self.origin_lot_id or "",
            self.source_ref or "",
            self.notes
        ]

    @classmethod
    def sheet_headers(cls) -> List[str]:
        return [
            "Lot ID", "Account", "Date", "Timestamp", "Kind", "Quantity",
            "Remaining", "Unit Price", "Currency", "Remaining Basis",
            "Status", "Origin Lot ID", "Source", "Notes"
        ]


@dataclass(frozen=True)
class RewardEvent:
    """Epoch-scoped reward credit observed on chain."""
    account: str
    epoch: int
    quantity: Decimal
    kind: RewardKind
    timestamp: int  # epoch-end timestamp used for valuation


@dataclass
class LotConsumption:
    """Records how much of a lot was consumed in a disposal."""
    lot_id: str
    quantity: Decimal
    cost_basis: Decimal
    proceeds: Decimal
    gain_type: GainType
    acquisition_timestamp: int

    @property
    def gain(self) -> Decimal:
        return self.proceeds - self.cost_basis

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lot_id": self.lot_id,
            "quantity": str(self.quantity),
            "basis": str(self.cost_basis),
            "proceeds": str(self.proceeds),
            "gain_type": self.gain_type.value,
            "acquired": self.acquisition_timestamp
        }


@dataclass
class Disposal:
    """A reduction of one or more lots and the gain or loss it realized."""
    disposal_id: str
    account: str
    kind: DisposalKind
    timestamp: int
    quantity: Decimal
    proceeds: Decimal
    cost_basis: Decimal
    short_term_gain: Decimal
    long_term_gain: Decimal
    consumed_lots: List[LotConsumption]
    reference: Optional[str] = None
    notes: str = ""

    @property
    def date(self) -> str:
        return format_timestamp(self.timestamp)

    @property
    def realized_gain_loss(self) -> Decimal:
        return self.short_term_gain + self.long_term_gain

    def consumed_lots_json(self) -> str:
        """JSON representation of consumed lots for sheet storage."""
        return json.dumps([c.to_dict() for c in self.consumed_lots])

    def consumed_lots_summary(self) -> str:
        """Human-readable summary of consumed lots."""
        return ", ".join([f"{c.lot_id}:{c.quantity}" for c in self.consumed_lots])

    def to_sheet_row(self) -> List[Any]:
        return [
            self.disposal_id,
            self.account,
            self.date,
            self.timestamp,
            self.kind.value,
            str(self.quantity),
            str(self.proceeds),
            str(self.cost_basis),
            str(self.short_term_gain),
            str(self.long_term_gain),
            str(self.realized_gain_loss),
            self.consumed_lots_summary(),
            self.reference or "",
            self.notes
        ]

    @classmethod
    def sheet_headers(cls) -> List[str]:
        return [
            "Disposal ID", "Account", "Date", "Timestamp", "Kind", "Quantity",
            "Proceeds", "Cost Basis", "Short-term Gain/Loss", "Long-term Gain/Loss",
            "Realized Gain/Loss", "Consumed Lots", "Reference", "Notes"
        ]


@dataclass
class DisposalEvent:
    """A completed trade, swap or transfer reported by an orchestrator."""
    account: str
    timestamp: int
    quantity: Decimal
    kind: DisposalKind = DisposalKind.SELL
    proceeds: Optional[Decimal] = None
    swapped_quantity: Optional[Decimal] = None  # Quantity of the asset received in a swap
    swapped_asset: Optional[str] = None
    reference: Optional[str] = None  # Idempotency key (order id, tx signature)
    notes: str = ""


@dataclass(frozen=True)
class SelectionPolicy:
    """Which lots a disposal consumes, and in what order."""
    method: CostBasisMethod = CostBasisMethod.FIFO
    lot_ids: Tuple[str, ...] = ()

    @classmethod
    def fifo(cls) -> "SelectionPolicy":
        return cls(CostBasisMethod.FIFO)

    @classmethod
    def hifo(cls) -> "SelectionPolicy":
        return cls(CostBasisMethod.HIFO)

    @classmethod
    def explicit(cls, lot_ids: Sequence[str]) -> "SelectionPolicy":
        if not lot_ids:
            raise ValueError("Specific identification requires at least one lot id")
        return cls(CostBasisMethod.SPECIFIC, tuple(lot_ids))


@dataclass
class SweepTask:
    """An in-flight restake of reward proceeds."""
    task_id: str
    source: str
    destination: str
    amount: Optional[Decimal]
    state: SweepState
    correlation_id: str
    stake_correlation_id: str
    attempts: int = 0
    last_error: Optional[str] = None
    resume_state: Optional[SweepState] = None
    disposal_id: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def is_active(self) -> bool:
        return not self.state.is_terminal

    def to_sheet_row(self) -> List[Any]:
        return [
            self.task_id,
            self.source,
            self.destination,
            str(self.amount) if self.amount is not None else "",
            self.state.value,
            self.attempts,
            self.correlation_id,
            self.last_error or "",
            self.disposal_id or "",
            format_timestamp(self.updated_at) if self.updated_at else ""
        ]

    @classmethod
    def sheet_headers(cls) -> List[str]:
        return [
            "Task ID", "Source", "Destination", "Amount", "State", "Attempts",
            "Correlation ID", "Last Error", "Disposal ID", "Updated"
        ]


@dataclass
class PendingOrder:
    """A sell order placed on an exchange and not yet settled in the ledger."""
    order_id: str
    account: str
    pair: str
    side: OrderSide
    price: Decimal
    quantity: Decimal
    state: OrderState
    placed_at: int
    disposal_id: Optional[str] = None


@dataclass
class OrderStatus:
    """Order state as reported by an exchange."""
    state: OrderState
    filled_quantity: Decimal = Decimal("0")
    fill_price: Optional[Decimal] = None
    updated_at: Optional[int] = None


@dataclass
class TransferResult:
    """Acknowledgement of a transfer or stake instruction."""
    correlation_id: str
    reference: Optional[str] = None  # Transaction signature, when known
    duplicate: bool = False  # True when the correlation id had already been submitted


@dataclass
class LedgerSnapshot:
    """Read-only view handed to report exporters."""
    accounts: List[TrackedAccount] = field(default_factory=list)
    lots: List[Lot] = field(default_factory=list)
    disposals: List[Disposal] = field(default_factory=list)
    sweep_tasks: List[SweepTask] = field(default_factory=list)

    @property
    def open_lots(self) -> List[Lot]:
        return [lot for lot in self.lots if lot.is_open]

    @property
    def closed_lots(self) -> List[Lot]:
        return [lot for lot in self.lots if not lot.is_open]
