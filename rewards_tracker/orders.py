import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, Optional

from rewards_tracker.clients.orchestrator import Orchestrator
from rewards_tracker.config import ProviderSettings
from rewards_tracker.exceptions import InsufficientLotsError, InvariantViolationError, LedgerError
from rewards_tracker.fixed_point import ZERO
from rewards_tracker.ledger import LotLedger
from rewards_tracker.matcher import DisposalMatcher
from rewards_tracker.models import DisposalEvent, DisposalKind, OrderSide, OrderState, PendingOrder
from rewards_tracker.retry import call_with_retry
from rewards_tracker.store import OrderRecord, order_from_record

logger = logging.getLogger(__name__)


@dataclass
class OrderSyncResult:
    settled: List[PendingOrder] = field(default_factory=list)
    still_open: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class OrderTracker:
    """Tracks exchange sell orders and records their fills as disposals."""

    def __init__(self, ledger: LotLedger, matcher: DisposalMatcher, orchestrator: Orchestrator,
                 provider: Optional[ProviderSettings] = None, clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.matcher = matcher
        self.orchestrator = orchestrator
        self.provider = provider or ProviderSettings()
        self.clock = clock

    def _retry(self, func, *args, label: str):
        return call_with_retry(
            func, *args,
            label=label,
            max_tries=self.provider.max_tries,
            factor=self.provider.backoff_factor,
            max_value=self.provider.backoff_max,
        )

    def list_orders(self, open_only: bool = False) -> List[PendingOrder]:
        with self.ledger.store.read() as session:
            query = session.query(OrderRecord)
            if open_only:
                query = query.filter(OrderRecord.state == OrderState.OPEN.value)
            return [order_from_record(r) for r in query.order_by(OrderRecord.placed_at, OrderRecord.order_id)]

    def place_sell(self, account: str, pair: str, price: Decimal, quantity: Decimal) -> PendingOrder:
        """Place a limit sell and remember it until it settles."""
        fixed = self.ledger.fixed
        price = fixed.price(price)
        quantity = fixed.quantity(quantity)
        if quantity <= 0 or price <= 0:
            raise ValueError(f"Sell order needs positive price and quantity, got {quantity} @ {price}")

        with self.ledger.store.read() as session:
            self.ledger.get_account(session, account)
            available = self.ledger.free_quantity(session, account)
        if available < quantity:
            raise InsufficientLotsError(account, quantity, available)

        order_id = self._retry(
            self.orchestrator.place_order, pair, OrderSide.SELL, price, quantity,
            label=f"place {pair} sell",
        )
        with self.ledger.transaction(account) as session:
            record = OrderRecord(
                order_id=order_id,
                account=account,
                pair=pair,
                side=OrderSide.SELL.value,
                price=price,
                quantity=quantity,
                state=OrderState.OPEN.value,
                placed_at=int(self.clock()),
            )
            session.add(record)
            logger.info("Placed %s sell %s: %s @ %s for %s", pair, order_id, quantity, price, account)
            return order_from_record(record)

    def cancel(self, order_id: str):
        """Ask the exchange to cancel. The order settles on the next sync."""
        self._retry(self.orchestrator.cancel_order, order_id, label=f"cancel {order_id}")
        logger.info("Requested cancellation of %s", order_id)

    def sync(self) -> OrderSyncResult:
        """Poll every open order; record fills as sell disposals and close settled orders."""
        result = OrderSyncResult()
        for order in self.list_orders(open_only=True):
            try:
                settled = self._sync_order(order)
            except InvariantViolationError:
                raise
            except LedgerError as e:
                logger.error("Order %s on %s not settled: %s", order.order_id, order.account, e)
                result.errors.append(f"{order.account} order {order.order_id}: {e}")
                continue

            if settled is None:
                result.still_open.append(order.order_id)
            else:
                result.settled.append(settled)
        return result

    def _sync_order(self, order: PendingOrder) -> Optional[PendingOrder]:
        status = self._retry(self.orchestrator.order_status, order.order_id, label=f"status {order.order_id}")
        if status.state == OrderState.OPEN:
            return None

        filled = self.ledger.fixed.quantity(status.filled_quantity or ZERO)
        with self.ledger.transaction(order.account) as session:
            record = session.get(OrderRecord, order.order_id)
            if record.state != OrderState.OPEN.value:
                return order_from_record(record)

            if filled > 0:
                fill_price = status.fill_price if status.fill_price is not None else order.price
                disposal = self.matcher.dispose_in(session, DisposalEvent(
                    account=order.account,
                    timestamp=status.updated_at or int(self.clock()),
                    quantity=filled,
                    kind=DisposalKind.SELL,
                    proceeds=filled * fill_price,
                    reference=f"order:{order.order_id}",
                    notes=f"{order.pair} sell {filled} @ {fill_price}",
                ), release=order.order_id)
                record.disposal_id = disposal.disposal_id

            record.state = status.state.value
            logger.info("Order %s %s with %s filled", order.order_id, status.state.value, filled)
            return order_from_record(record)
