#!/usr/bin/env python3
"""
Lens - On-Chain Analytics CLI

Reconstructs wallet trade history and P&L, holder census and early-buyer
classification, and prints the report as JSON.

Usage:
    python -m lens.main [--pretty] [--force-refresh] wallet <address>
    python -m lens.main mint <mint> [--launch-ms 1700000000000]
    python -m lens.main analyze --wallet <address> --mint <mint>
    python -m lens.main clear <address>          # clear cached trades and rescan
    python -m lens.main config                   # print configuration summary
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .config import LensConfig, create_engine
from .core.engine import AnalyticsEngine, AnalyticsReport
from .core.errors import ConfigurationError, ValidationError

logger = logging.getLogger("lens")

EXIT_VALIDATION = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Lens - on-chain trade, holder and early-buyer analytics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--force-refresh",
        action="store_true",
        help="Ignore cached results and refetch from upstream",
    )
    parser.add_argument(
        "--pretty",
        action="store_true",
        help="Indent JSON output",
    )
    parser.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Overall deadline in seconds for upstream fetches",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    wallet = sub.add_parser("wallet", help="Positions and P&L for a wallet")
    wallet.add_argument("address")

    mint = sub.add_parser("mint", help="Holder census and buyer classification for a mint")
    mint.add_argument("address")
    mint.add_argument(
        "--launch-ms",
        type=int,
        default=None,
        help="Launch timestamp (ms) for sniper classification; defaults to the earliest observed activity",
    )

    analyze = sub.add_parser("analyze", help="Wallet and mint analytics in one report")
    analyze.add_argument("--wallet", default=None)
    analyze.add_argument("--mint", default=None)
    analyze.add_argument("--launch-ms", type=int, default=None)

    clear = sub.add_parser("clear", help="Clear cached trades for a wallet and rescan")
    clear.add_argument("address")

    sub.add_parser("config", help="Print configuration summary")

    return parser.parse_args(argv)


async def run_command(engine: AnalyticsEngine, args: argparse.Namespace) -> AnalyticsReport:
    try:
        if args.command == "wallet":
            return await engine.analyze_wallet(
                args.address, force_refresh=args.force_refresh, deadline_seconds=args.deadline
            )
        if args.command == "mint":
            return await engine.analyze_mint(
                args.address,
                launch_timestamp_ms=args.launch_ms,
                force_refresh=args.force_refresh,
                deadline_seconds=args.deadline,
            )
        if args.command == "clear":
            return await engine.clear_and_rescan(args.address)
        return await engine.analyze(
            wallet=args.wallet,
            mint=args.mint,
            launch_timestamp_ms=args.launch_ms,
            force_refresh=args.force_refresh,
            deadline_seconds=args.deadline,
        )
    finally:
        await engine.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, LensConfig.get_log_level(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "config":
        LensConfig.print_config_summary()
        is_valid, _ = LensConfig.validate_config()
        return 0 if is_valid else 1

    try:
        engine = create_engine()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    try:
        report = asyncio.run(run_command(engine, args))
    except ValidationError as e:
        logger.error(f"Invalid input: {e}")
        return EXIT_VALIDATION

    print(json.dumps(report.to_dict(), indent=2 if args.pretty else None))
    return 0


if __name__ == "__main__":
    sys.exit(main())
