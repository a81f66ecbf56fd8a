#!/usr/bin/env python3
"""
Staking Rewards Ledger

Tax-lot ledger for staking, voting and validator rewards:
- Income lots per reward epoch
- FIFO / HIFO / specific-identification disposals with short/long-term gains
- Sweep-stake tracking and spreadsheet export
"""

import argparse
import importlib
import logging
import time
from decimal import Decimal
from typing import Optional

from rewards_tracker.clients.coingecko import CoinGeckoClient
from rewards_tracker.config import LedgerSettings
from rewards_tracker.fixed_point import ZERO
from rewards_tracker.ledger import LotLedger
from rewards_tracker.matcher import DisposalMatcher
from rewards_tracker.models import AccountRole, CostBasisMethod, DisposalEvent, DisposalKind, SelectionPolicy
from rewards_tracker.report import SheetsReportExporter
from rewards_tracker.store import LedgerStore
from rewards_tracker.tracker import build_tracker


def _load_client(path: str):
    """Instantiate a client class given as 'package.module:ClassName'."""
    module_name, _, class_name = path.partition(':')
    if not module_name or not class_name:
        raise ValueError(f"Expected package.module:ClassName, got {path!r}")
    return getattr(importlib.import_module(module_name), class_name)()


def _policy(args) -> Optional[SelectionPolicy]:
    if args.lots:
        return SelectionPolicy.explicit([lot_id.strip() for lot_id in args.lots.split(',') if lot_id.strip()])
    if args.method:
        return SelectionPolicy(CostBasisMethod[args.method])
    return None


def run():
    parser = argparse.ArgumentParser(
        description='Staking Rewards Ledger',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Track a vote account
  python -m rewards_tracker.main --mode register --account Vote111 --role vote --label "Validator vote"

  # Record a sale of 60 SOL for $1,500 using FIFO
  python -m rewards_tracker.main --mode dispose --account Vote111 --quantity 60 --proceeds 1500 --reference kraken:123

  # Sell specific lots
  python -m rewards_tracker.main --mode dispose --account Vote111 --quantity 10 --proceeds 250 --lots LOT-AB12,LOT-CD34

  # Show open lots and realized gains
  python -m rewards_tracker.main --mode lots --account Vote111
  python -m rewards_tracker.main --mode summary

  # Export lots, disposals and sweeps to Google Sheets
  python -m rewards_tracker.main --mode export

  # Reconcile rewards, settle orders and advance sweeps with your chain and exchange clients
  python -m rewards_tracker.main --mode run --chain mynode.clients:RpcChainObserver --orchestrator mynode.clients:Exchange --verify
        """
    )

    parser.add_argument(
        '--mode',
        choices=['register', 'price', 'dispose', 'lots', 'summary', 'export', 'run'],
        default='summary',
        help='''Mode of operation:
            register - Start tracking an account
            price - Show the current asset price
            dispose - Record a sell or swap against open lots
            lots - List open lots
            summary - Open quantity and realized gains per account (default)
            export - Write the ledger to Google Sheets
            run - One reconcile, order sync, sweep and balance check cycle
        '''
    )
    parser.add_argument('--account', type=str, default=None, help='Tracked account address')
    parser.add_argument('--role', choices=[r.value for r in AccountRole], default=AccountRole.STAKE.value)
    parser.add_argument('--label', type=str, default='')
    parser.add_argument('--quantity', type=Decimal, default=None, help='Quantity disposed')
    parser.add_argument('--proceeds', type=Decimal, default=None, help='Proceeds in the reference currency')
    parser.add_argument('--timestamp', type=int, default=None, help='Disposal time (unix seconds, default now)')
    parser.add_argument('--reference', type=str, default=None, help='Trade id used to skip duplicates')
    parser.add_argument('--method', choices=[m.name for m in CostBasisMethod if m != CostBasisMethod.SPECIFIC],
                        default=None, help='Lot selection method (default LOT_STRATEGY)')
    parser.add_argument('--lots', type=str, default=None, help='Comma-separated lot ids for specific identification')
    parser.add_argument('--chain', type=str, default=None, help='ChainObserver class for run, as package.module:ClassName')
    parser.add_argument('--orchestrator', type=str, default=None,
                        help='Orchestrator class for run (enables order sync and sweeps)')
    parser.add_argument('--verify', action='store_true', help='Verify balances after the run (default VERIFY_BALANCES)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    settings = LedgerSettings()
    print(f"Opening ledger at {settings.database_url}...")
    ledger = LotLedger(LedgerStore(settings.database_url), settings)

    if args.mode == 'register':
        if not args.account:
            parser.error('--account is required for register')
        account = ledger.register_account(args.account, AccountRole(args.role), args.label)
        print(f"✓ Tracking {account.role.value} account {account.address}")

    elif args.mode == 'price':
        client = CoinGeckoClient(ledger=settings)
        price, currency = client.get_current_price(settings.asset_symbol)
        print(f"✓ {settings.asset_symbol}: {price} {currency}")

    elif args.mode == 'dispose':
        if not args.account or args.quantity is None or args.proceeds is None:
            parser.error('--account, --quantity and --proceeds are required for dispose')
        matcher = DisposalMatcher(ledger)
        disposal = matcher.dispose(DisposalEvent(
            account=args.account,
            timestamp=args.timestamp or int(time.time()),
            quantity=args.quantity,
            kind=DisposalKind.SELL,
            proceeds=args.proceeds,
            reference=args.reference,
        ), _policy(args))
        print(f"\n✓ Recorded {disposal.disposal_id}")
        print(f"  Quantity:   {disposal.quantity}")
        print(f"  Proceeds:   {disposal.proceeds}")
        print(f"  Cost basis: {disposal.cost_basis}")
        print(f"  Short-term: {disposal.short_term_gain}")
        print(f"  Long-term:  {disposal.long_term_gain}")
        print(f"  Lots:       {disposal.consumed_lots_summary()}")

    elif args.mode == 'lots':
        snapshot = ledger.snapshot()
        lots = [lot for lot in snapshot.open_lots if args.account is None or lot.account == args.account]
        print(f"\n{'='*60}")
        print(f"Open Lots ({len(lots)})")
        print(f"{'='*60}")
        for lot in lots:
            print(f"  {lot.lot_id}  {lot.date}  {lot.kind.value:<16} {lot.remaining} @ {lot.unit_price}")

    elif args.mode == 'summary':
        snapshot = ledger.snapshot()
        print(f"\n{'='*60}")
        print("Ledger Summary")
        print(f"{'='*60}")
        for account in snapshot.accounts:
            open_quantity = sum((lot.remaining for lot in snapshot.open_lots if lot.account == account.address), ZERO)
            disposals = [d for d in snapshot.disposals if d.account == account.address]
            short_term = sum((d.short_term_gain for d in disposals), ZERO)
            long_term = sum((d.long_term_gain for d in disposals), ZERO)
            print(f"  {account.address} ({account.role.value}) {account.label}")
            print(f"    Last epoch: {account.last_reconciled_epoch}")
            print(f"    Open: {open_quantity} {settings.asset_symbol}")
            print(f"    Realized: short-term {short_term}, long-term {long_term} {settings.reference_currency}")

    elif args.mode == 'export':
        exporter = SheetsReportExporter()
        written = exporter.export(ledger.snapshot())
        for name, count in written.items():
            print(f"  ✓ {name}: {count} rows")

    elif args.mode == 'run':
        if not args.chain:
            parser.error('--chain is required for run')
        orchestrator = _load_client(args.orchestrator) if args.orchestrator else None
        tracker = build_tracker(ledger, _load_client(args.chain), orchestrator)
        tracker.run_cycle(verify=True if args.verify else None)

    print("\n✓ Done!")


if __name__ == "__main__":
    run()
