"""
Reward reconciliation: on-chain epoch credits become income lots, exactly once.

Each epoch commits in its own transaction together with the account checkpoint,
so a crash mid-run leaves every earlier epoch recorded and every later one
untouched. Replaying the same history is a no-op.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from itertools import groupby
from typing import Dict, List, Optional, Tuple

from rewards_tracker.clients.chain import ChainObserver
from rewards_tracker.clients.price import PriceClient
from rewards_tracker.config import LedgerSettings, ProviderSettings
from rewards_tracker.exceptions import AlreadyProcessedError, InvariantViolationError, UnavailableError
from rewards_tracker.ledger import LotLedger
from rewards_tracker.models import Acquisition, RewardEvent
from rewards_tracker.retry import call_with_retry

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of reconciling one account."""
    account: str
    created_lots: List[str] = field(default_factory=list)
    skipped_epochs: List[int] = field(default_factory=list)
    deferred_epoch: Optional[int] = None
    deferred_reason: Optional[str] = None
    checkpoint: Optional[int] = None

    @property
    def complete(self) -> bool:
        return self.deferred_epoch is None


class RewardReconciler:
    """Turns RewardEvents from the chain observer into income lots."""

    def __init__(self, ledger: LotLedger, chain: ChainObserver, price_client: PriceClient,
                 provider: Optional[ProviderSettings] = None):
        self.ledger = ledger
        self.chain = chain
        self.price_client = price_client
        self.config: LedgerSettings = ledger.config
        self.provider = provider or ProviderSettings()

    def _retry(self, func, *args, label: str):
        return call_with_retry(
            func, *args,
            label=label,
            max_tries=self.provider.max_tries,
            factor=self.provider.backoff_factor,
            max_value=self.provider.backoff_max,
        )

    def _checkpoint(self, address: str) -> Optional[int]:
        with self.ledger.store.read() as session:
            return self.ledger.get_account(session, address).last_reconciled_epoch

    def reconcile(self, address: str) -> ReconcileResult:
        """Fetch new reward events for an account and reconcile them."""
        checkpoint = self._checkpoint(address)
        events = self._retry(self.chain.reward_events, address, checkpoint, label=f"reward_events({address})")
        return self.apply_events(address, events)

    def apply_events(self, address: str, events: List[RewardEvent]) -> ReconcileResult:
        """
        Reconcile an ordered sequence of reward events for one account.

        Epochs at or below the checkpoint, or arriving after a later epoch, are
        skipped. When a price is unavailable the epoch is deferred and nothing
        after it is processed in this run.
        """
        checkpoint = self._checkpoint(address)
        result = ReconcileResult(account=address, checkpoint=checkpoint)

        for epoch, group in groupby(events, key=lambda e: e.epoch):
            group = list(group)
            for event in group:
                if event.account != address:
                    raise InvariantViolationError(
                        f"Reward event for {event.account} epoch {epoch} delivered while reconciling {address}"
                    )
                if event.quantity < 0:
                    raise InvariantViolationError(
                        f"Negative reward credit {event.quantity} for {address} epoch {epoch}"
                    )

            if result.checkpoint is not None and epoch <= result.checkpoint:
                logger.info("Skipping epoch %d for %s: already reconciled through %d", epoch, address, result.checkpoint)
                result.skipped_epochs.append(epoch)
                continue

            try:
                prices = self._prices_for(group)
            except UnavailableError as e:
                logger.warning("Deferring epoch %d for %s: %s", epoch, address, e)
                result.deferred_epoch = epoch
                result.deferred_reason = str(e)
                break

            try:
                result.created_lots.extend(self._commit_epoch(address, epoch, group, prices))
            except AlreadyProcessedError as e:
                logger.info("Skipping epoch %d for %s: %s", epoch, address, e)
                result.skipped_epochs.append(epoch)
                continue
            result.checkpoint = epoch

        if result.created_lots:
            logger.info(
                "Reconciled %s through epoch %s: %d new lots",
                address, result.checkpoint, len(result.created_lots)
            )
        return result

    def _credited(self, event: RewardEvent) -> Decimal:
        """Credit at ledger precision; dust below the smallest unit books no lot."""
        return self.ledger.fixed.quantity(event.quantity)

    def _prices_for(self, events: List[RewardEvent]) -> Dict[int, Tuple[Decimal, str]]:
        """Unit price per epoch-end timestamp, fetched outside any transaction."""
        prices = {}
        for event in events:
            if self._credited(event) == 0 or event.timestamp in prices:
                continue
            prices[event.timestamp] = self._retry(
                self.price_client.price, self.config.asset_symbol, event.timestamp,
                label=f"{self.price_client.name} price at {event.timestamp}",
            )
        return prices

    def _commit_epoch(self, address: str, epoch: int, events: List[RewardEvent],
                      prices: Dict[int, Tuple[Decimal, str]]) -> List[str]:
        created = []
        with self.ledger.transaction(address) as session:
            checkpoint = self.ledger.get_account(session, address).last_reconciled_epoch
            if checkpoint is not None and epoch <= checkpoint:
                raise AlreadyProcessedError(f"checkpoint moved to {checkpoint}")

            seen = set()
            for event in events:
                if event.kind in seen or self.ledger.has_reward_event(session, event):
                    logger.info("Duplicate %s reward for %s epoch %d ignored", event.kind.value, address, epoch)
                    continue
                seen.add(event.kind)

                lot_id = None
                quantity = self._credited(event)
                if quantity > 0:
                    unit_price, currency = prices[event.timestamp]
                    lot_id = self.ledger.open_lot(session, address, Acquisition(
                        timestamp=event.timestamp,
                        quantity=quantity,
                        unit_price=unit_price,
                        kind=event.kind.acquisition_kind,
                        currency=currency,
                        source_ref=f"epoch:{epoch}:{event.kind.value}",
                        notes=f"{event.kind.value} reward, epoch {epoch}",
                    ))
                    created.append(lot_id)
                self.ledger.record_reward_event(session, event, lot_id)

            self.ledger.advance_checkpoint(session, address, epoch)
        return created
