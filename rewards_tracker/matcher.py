"""
Disposal matching: retire open lots against sells, swaps and transfers.

Lot selection follows a SelectionPolicy (FIFO, HIFO or specific identification).
Each consumed portion carries its own cost basis, pro-rata share of proceeds and
holding-period classification. The lot mutations and the disposal record commit
in a single transaction.
"""

import dataclasses
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from rewards_tracker.clients.price import PriceClient
from rewards_tracker.config import ProviderSettings
from rewards_tracker.exceptions import InsufficientLotsError
from rewards_tracker.fixed_point import ZERO, classify_holding_period
from rewards_tracker.ledger import LotLedger, new_id
from rewards_tracker.models import (
    CostBasisMethod, Disposal, DisposalEvent, GainType, Lot, LotConsumption, SelectionPolicy
)
from rewards_tracker.retry import call_with_retry

logger = logging.getLogger(__name__)


class DisposalMatcher:
    """Selects lots for disposals and records realized gains."""

    def __init__(self, ledger: LotLedger, price_client: Optional[PriceClient] = None,
                 provider: Optional[ProviderSettings] = None):
        self.ledger = ledger
        self.config = ledger.config
        self.fixed = ledger.fixed
        self.price_client = price_client
        self.provider = provider or ProviderSettings()

    def default_policy(self) -> SelectionPolicy:
        if self.config.lot_strategy == CostBasisMethod.SPECIFIC:
            raise ValueError("LOT_STRATEGY=SPECIFIC requires an explicit SelectionPolicy per disposal")
        return SelectionPolicy(self.config.lot_strategy)

    # -------------------------------------------------------------------------
    # Lot selection
    # -------------------------------------------------------------------------

    def candidate_lots(self, session: Session, account: str, timestamp: int,
                       policy: SelectionPolicy) -> List[Lot]:
        """Open lots eligible for a disposal at `timestamp`, in consumption order."""
        if policy.method == CostBasisMethod.SPECIFIC:
            return self.ledger.list_open_lots(session, account, as_of=timestamp, order=policy.lot_ids)

        lots = self.ledger.list_open_lots(session, account, as_of=timestamp)
        if policy.method == CostBasisMethod.HIFO:
            # Stable sort keeps FIFO order between lots at the same price
            lots = sorted(lots, key=lambda lot: lot.unit_price, reverse=True)
        return lots

    def _select(self, lots: List[Lot], quantity: Decimal, account: str, timestamp: int) -> List[Tuple[Lot, Decimal]]:
        available = sum((lot.remaining for lot in lots), ZERO)
        if available < quantity:
            raise InsufficientLotsError(account, quantity, available, timestamp)

        portions = []
        needed = quantity
        for lot in lots:
            if needed <= 0:
                break
            take = min(lot.remaining, needed)
            portions.append((lot, take))
            needed -= take
        return portions

    # -------------------------------------------------------------------------
    # Proceeds
    # -------------------------------------------------------------------------

    def resolve_proceeds(self, event: DisposalEvent) -> DisposalEvent:
        """Value a swap at spot when the event carries a swapped quantity instead of proceeds."""
        if event.proceeds is not None or not event.kind.taxable:
            return event
        if event.swapped_quantity is None or not event.swapped_asset:
            raise ValueError(
                f"{event.kind.value} disposal for {event.account} at {event.timestamp} has neither "
                "proceeds nor a swapped quantity"
            )
        if self.price_client is None:
            raise ValueError("A price client is required to value swapped quantities")

        unit_price, _ = call_with_retry(
            self.price_client.price, event.swapped_asset, event.timestamp,
            label=f"{self.price_client.name} {event.swapped_asset} price at {event.timestamp}",
            max_tries=self.provider.max_tries,
            factor=self.provider.backoff_factor,
            max_value=self.provider.backoff_max,
        )
        proceeds = self.fixed.currency(event.swapped_quantity * unit_price)
        logger.debug(
            "Valued %s %s at %s for disposal on %s", event.swapped_quantity, event.swapped_asset, proceeds, event.account
        )
        return dataclasses.replace(event, proceeds=proceeds)

    # -------------------------------------------------------------------------
    # Planning and recording
    # -------------------------------------------------------------------------

    def _check_free(self, session: Session, event: DisposalEvent, quantity: Decimal, release: Optional[str]):
        committed = self.ledger.committed_quantity(session, event.account, exclude=release)
        if not committed:
            return
        free = self.ledger.open_quantity(session, event.account) - committed
        if quantity > free:
            raise InsufficientLotsError(event.account, quantity, max(free, ZERO), event.timestamp)

    def _build(self, session: Session, event: DisposalEvent, policy: Optional[SelectionPolicy],
               release: Optional[str] = None) -> Disposal:
        quantity = self.fixed.quantity(event.quantity)
        if quantity <= 0:
            raise ValueError(f"Disposal quantity must be positive, got {event.quantity}")
        policy = policy or self.default_policy()
        self._check_free(session, event, quantity, release)

        lots = self.candidate_lots(session, event.account, event.timestamp, policy)
        portions = self._select(lots, quantity, event.account, event.timestamp)

        bases = [take * lot.unit_price for lot, take in portions]
        if event.kind.taxable:
            if event.proceeds is None:
                raise ValueError(f"Disposal for {event.account} at {event.timestamp} has no proceeds")
            shares = self.fixed.allocate(event.proceeds, [take for _, take in portions])
        else:
            # Transfers carry basis over, so proceeds equal cost basis
            shares = bases

        consumed = []
        short_term = ZERO
        long_term = ZERO
        for (lot, take), basis, proceeds in zip(portions, bases, shares):
            gain_type = classify_holding_period(lot.timestamp, event.timestamp, self.config.holding_period_seconds)
            consumed.append(LotConsumption(
                lot_id=lot.lot_id,
                quantity=take,
                cost_basis=basis,
                proceeds=proceeds,
                gain_type=gain_type,
                acquisition_timestamp=lot.timestamp,
            ))
            if gain_type == GainType.LONG_TERM:
                long_term += proceeds - basis
            else:
                short_term += proceeds - basis

        return Disposal(
            disposal_id=new_id("DSP"),
            account=event.account,
            kind=event.kind,
            timestamp=event.timestamp,
            quantity=quantity,
            proceeds=sum(shares, ZERO),
            cost_basis=sum(bases, ZERO),
            short_term_gain=short_term,
            long_term_gain=long_term,
            consumed_lots=consumed,
            reference=event.reference,
            notes=event.notes,
        )

    def plan(self, event: DisposalEvent, policy: Optional[SelectionPolicy] = None,
             session: Optional[Session] = None, release: Optional[str] = None) -> Disposal:
        """Work out which lots a disposal would consume without changing anything."""
        event = self.resolve_proceeds(event)
        if session is not None:
            return self._build(session, event, policy, release)
        with self.ledger.store.read() as read_session:
            return self._build(read_session, event, policy, release)

    def _recorded(self, session: Session, event: DisposalEvent) -> Optional[Disposal]:
        if not event.reference:
            return None
        existing = self.ledger.get_disposal_by_reference(session, event.account, event.reference)
        if existing is not None:
            logger.info("Disposal %s for %s already recorded as %s", event.reference, event.account, existing.disposal_id)
        return existing

    def dispose_in(self, session: Session, event: DisposalEvent,
                   policy: Optional[SelectionPolicy] = None, release: Optional[str] = None) -> Disposal:
        """Record a disposal inside the caller's transaction.

        Quantity committed to open sweeps and open sell orders is off limits,
        except the claim named by `release` (the sweep task or order being settled).
        """
        existing = self._recorded(session, event)
        if existing is not None:
            return existing

        disposal = self._build(session, self.resolve_proceeds(event), policy, release)
        for portion in disposal.consumed_lots:
            self.ledger.consume(session, portion.lot_id, portion.quantity)
        self.ledger.record_disposal(session, disposal)

        logger.info(
            "Recorded %s %s on %s: %s units, proceeds %s, basis %s, gain %s",
            disposal.kind.value, disposal.disposal_id, disposal.account, disposal.quantity,
            disposal.proceeds, disposal.cost_basis, disposal.realized_gain_loss
        )
        return disposal

    def dispose(self, event: DisposalEvent, policy: Optional[SelectionPolicy] = None,
                release: Optional[str] = None) -> Disposal:
        """Record a disposal in its own transaction."""
        with self.ledger.store.read() as session:
            existing = self._recorded(session, event)
        if existing is not None:
            return existing

        # Spot price is fetched outside the transaction
        event = self.resolve_proceeds(event)
        with self.ledger.transaction(event.account) as session:
            return self.dispose_in(session, event, policy, release)
