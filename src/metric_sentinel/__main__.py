"""
Entry point for running metric_sentinel as a module.

Usage:
    python -m metric_sentinel [command] [options]

Commands:
    analyze KEY [KEY ...]   Analyse asset:metric:timeframe keys
    scan                    Report spikes across every series in the store
    check-config            Validate configuration

Options:
    --env ENV           Environment (development/production)
    --db PATH           SQLite sample database (overrides config)
"""

from __future__ import annotations

import argparse
import asyncio
import sys


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="metric_sentinel",
        description="Metric baseline, spike and trend analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--env",
        default="development",
        help="Environment (development/production)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze = subparsers.add_parser("analyze", help="Analyse one or more keys")
    analyze.add_argument("keys", nargs="+", help="Keys as asset:metric:timeframe (e.g. btc:tvl:7d)")
    analyze.add_argument("--force", action="store_true", help="Bypass cached results")
    analyze.add_argument("--source", choices=["sqlite", "http"], default="sqlite", help="Sample source")
    analyze.add_argument("--db", default=None, help="SQLite sample database")

    scan = subparsers.add_parser("scan", help="Report spikes across all series in the SQLite store")
    scan.add_argument("--timeframe", default="7d", help="Timeframe to analyse (24h/7d/30d/90d)")
    scan.add_argument(
        "--min-severity",
        choices=["low", "medium", "high"],
        default="low",
        help="Lowest severity to report",
    )
    scan.add_argument("--db", default=None, help="SQLite sample database")

    subparsers.add_parser("check-config", help="Validate configuration")

    args = parser.parse_args(argv)

    # Import here to avoid slow startup for --help
    from metric_sentinel.app.run import run_analyze, run_check_config, run_scan

    try:
        if args.command == "analyze":
            return asyncio.run(
                run_analyze(
                    args.keys,
                    env=args.env,
                    force=args.force,
                    source_kind=args.source,
                    db_path=args.db,
                )
            )
        elif args.command == "scan":
            return asyncio.run(
                run_scan(
                    env=args.env,
                    timeframe=args.timeframe,
                    min_severity=args.min_severity,
                    db_path=args.db,
                )
            )
        elif args.command == "check-config":
            return asyncio.run(run_check_config(env=args.env))
        else:
            parser.print_help()
            return 1
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
