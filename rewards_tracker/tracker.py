import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from rewards_tracker.clients.chain import ChainObserver
from rewards_tracker.clients.coingecko import CoinGeckoClient
from rewards_tracker.clients.orchestrator import Orchestrator
from rewards_tracker.clients.price import PriceClient
from rewards_tracker.config import ProviderSettings, SweepSettings
from rewards_tracker.exceptions import InvariantViolationError, LedgerError
from rewards_tracker.fixed_point import ZERO
from rewards_tracker.ledger import LotLedger
from rewards_tracker.matcher import DisposalMatcher
from rewards_tracker.models import SweepState, SweepTask
from rewards_tracker.notifier import Notifier
from rewards_tracker.orders import OrderSyncResult, OrderTracker
from rewards_tracker.reconciler import ReconcileResult, RewardReconciler
from rewards_tracker.retry import call_with_retry
from rewards_tracker.sweep import SweepCoordinator

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """What one run cycle finished and what it left for the next run."""
    reconciled: List[ReconcileResult] = field(default_factory=list)
    orders: Optional[OrderSyncResult] = None
    sweeps: List[SweepTask] = field(default_factory=list)
    balance_differences: Dict[str, Decimal] = field(default_factory=dict)
    failed_accounts: List[str] = field(default_factory=list)
    unverified: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def created_lots(self) -> int:
        return sum(len(r.created_lots) for r in self.reconciled)

    @property
    def deferred(self) -> Dict[str, int]:
        return {r.account: r.deferred_epoch for r in self.reconciled if r.deferred_epoch is not None}

    @property
    def blocked_sweeps(self) -> List[SweepTask]:
        return [t for t in self.sweeps if not t.state.is_terminal]

    @property
    def failed_sweeps(self) -> List[SweepTask]:
        return [t for t in self.sweeps if t.state == SweepState.FAILED]

    @property
    def complete(self) -> bool:
        return not self.deferred and not self.errors and not self.failed_sweeps


class LedgerTracker:
    """Runs reconciliation, order sync, sweeps and balance checks for every tracked account."""

    def __init__(self, ledger: LotLedger, reconciler: RewardReconciler,
                 orders: Optional[OrderTracker] = None, sweeps: Optional[SweepCoordinator] = None,
                 chain: Optional[ChainObserver] = None, provider: Optional[ProviderSettings] = None):
        self.ledger = ledger
        self.config = ledger.config
        self.reconciler = reconciler
        self.orders = orders
        self.sweeps = sweeps
        self.chain = chain or reconciler.chain
        self.provider = provider or ProviderSettings()

    def _log(self, msg: str):
        """Print a timestamped log message."""
        ts = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        print(f"{ts}  {msg}")

    def reconcile_all(self, report: RunReport, addresses: Optional[List[str]] = None):
        """Reconcile accounts concurrently, each in its own transaction scope."""
        if addresses is None:
            addresses = [a.address for a in self.ledger.list_accounts()]
        if not addresses:
            print("ℹ️  No tracked accounts")
            return

        workers = max(1, min(self.config.max_workers, len(addresses)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {address: pool.submit(self.reconciler.reconcile, address) for address in addresses}

        for address, future in futures.items():
            try:
                result = future.result()
            except InvariantViolationError:
                raise
            except LedgerError as e:
                logger.error("Reconciling %s failed: %s", address, e)
                report.errors.append(f"{address}: reconciliation failed: {e}")
                report.failed_accounts.append(address)
                continue

            report.reconciled.append(result)
            if result.deferred_epoch is not None:
                self._log(f"{address}: deferred at epoch {result.deferred_epoch} ({result.deferred_reason})")
            elif result.created_lots:
                self._log(f"{address}: {len(result.created_lots)} income lots through epoch {result.checkpoint}")

    def verify_balances(self, report: RunReport):
        """Check lot conservation and compare open lots with on-chain balances.

        Accounts whose rewards this run did not reconcile to the chain head only
        get the conservation check and are listed as unverified.
        """
        lagging = set(report.deferred) | set(report.failed_accounts)
        for account in self.ledger.list_accounts():
            if account.address in lagging:
                with self.ledger.store.read() as session:
                    self.ledger.check_conservation(session, account.address)
                report.unverified.append(account.address)
                continue
            observed = call_with_retry(
                self.chain.balance, account.address,
                label=f"balance({account.address})",
                max_tries=self.provider.max_tries,
                factor=self.provider.backoff_factor,
                max_value=self.provider.backoff_max,
            )
            with self.ledger.store.read() as session:
                outgoing, incoming = (ZERO, ZERO)
                if self.sweeps is not None:
                    outgoing, incoming = self.sweeps.in_flight(session, account.address)
                self.ledger.check_conservation(session, account.address)
                report.balance_differences[account.address] = self.ledger.verify_balance(
                    session, account.address, observed, outgoing, incoming
                )

    def run_cycle(self, verify: Optional[bool] = None) -> RunReport:
        """
        One full pass: reconcile rewards, settle orders, advance sweeps and
        optionally verify balances. InvariantViolationError aborts the pass.
        """
        report = RunReport()

        print(f"\n{'='*60}")
        print("Reconciling Rewards")
        print(f"{'='*60}")
        self.reconcile_all(report)

        if self.orders is not None:
            print(f"\n{'='*60}")
            print("Syncing Orders")
            print(f"{'='*60}")
            report.orders = self.orders.sync()
            report.errors.extend(report.orders.errors)
            for order in report.orders.settled:
                self._log(f"Order {order.order_id} {order.state.value}")

        if self.sweeps is not None:
            print(f"\n{'='*60}")
            print("Advancing Sweeps")
            print(f"{'='*60}")
            report.sweeps = self.sweeps.run()
            for task in report.sweeps:
                self._log(f"Sweep {task.task_id} {task.source} -> {task.destination}: {task.state.value}")

        if verify is None:
            verify = self.config.verify_balances
        if verify:
            print(f"\n{'='*60}")
            print("Verifying Balances")
            print(f"{'='*60}")
            try:
                self.verify_balances(report)
            except InvariantViolationError:
                raise
            except LedgerError as e:
                report.errors.append(f"balance verification incomplete: {e}")

        self.print_summary(report)
        return report

    def print_summary(self, report: RunReport):
        print(f"\n{'='*60}")
        print("Run Summary")
        print(f"{'='*60}")
        print(f"  New income lots: {report.created_lots}")
        for address, epoch in report.deferred.items():
            print(f"  Deferred: {address} from epoch {epoch}")
        if report.orders is not None:
            print(f"  Orders settled: {len(report.orders.settled)}, open: {len(report.orders.still_open)}")
        for task in report.blocked_sweeps:
            note = f" ({task.last_error})" if task.last_error else ""
            print(f"  Sweep {task.task_id} waiting in {task.state.value}{note}")
        for address in report.unverified:
            print(f"  Balance not verified: {address} has unreconciled rewards")
        for address, difference in report.balance_differences.items():
            if difference != 0:
                print(f"  Balance difference on {address}: {difference}")
        for error in report.errors:
            print(f"  Error: {error}")
        if report.complete:
            print("\n✓ Run complete")
        else:
            print("\nℹ️  Run incomplete; remaining work resumes on the next run")


def build_tracker(ledger: LotLedger, chain: ChainObserver, orchestrator: Optional[Orchestrator] = None,
                  price_client: Optional[PriceClient] = None, notifier: Optional[Notifier] = None,
                  provider: Optional[ProviderSettings] = None,
                  sweep_settings: Optional[SweepSettings] = None) -> LedgerTracker:
    """
    Wire a LedgerTracker from a ledger and the external clients.

    Prices default to CoinGecko and notifications to the Slack webhook from the
    environment. Without an orchestrator the run only reconciles rewards and
    verifies balances; order sync and sweeps need one.

    Usage:
        ledger = LotLedger(LedgerStore(settings.database_url), settings)
        tracker = build_tracker(ledger, MyChainObserver(), MyOrchestrator())
        report = tracker.run_cycle()
    """
    provider = provider or ProviderSettings()
    price_client = price_client or CoinGeckoClient(provider=provider, ledger=ledger.config)
    matcher = DisposalMatcher(ledger, price_client, provider)
    reconciler = RewardReconciler(ledger, chain, price_client, provider)

    orders = None
    sweeps = None
    if orchestrator is not None:
        orders = OrderTracker(ledger, matcher, orchestrator, provider)
        sweeps = SweepCoordinator(ledger, matcher, chain, orchestrator, sweep_settings,
                                  notifier or Notifier())
    return LedgerTracker(ledger, reconciler, orders, sweeps, chain, provider)
