#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import json
import logging
import sys
from argparse import ArgumentParser
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from chainstore.config import Settings
from chainstore.errors import IngestionFailed
from chainstore.ingestion.options import IngestionCoordinator, IngestionReport

logger = logging.getLogger(__name__)


def build_parser() -> ArgumentParser:
    p = ArgumentParser(
        description=(
            "Options contract ingestion (snapshot file -> option_contracts). "
            "Reads a JSON array of option contracts for one underlying and upserts it, "
            "one locked transaction per expiration date."
        )
    )
    p.add_argument("--db-url", default=None, help="Overrides DATABASE_URL (default: env DATABASE_URL)")
    p.add_argument("--symbol", required=True, help="Underlying symbol the contracts belong to")
    p.add_argument(
        "--file",
        required=True,
        type=Path,
        help="JSON file holding a list of contracts, or an object with an 'options' list",
    )
    p.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Attempt every expiration group even after one fails (default: stop at the first failure)",
    )
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Overrides the default logging level (default: INFO)",
    )
    p.add_argument("--verbose", action="store_true", help="Shorthand for --log-level DEBUG")
    p.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress INFO logs (overrides --log-level unless DEBUG explicitly set)",
    )
    return p


def configure_logging(log_level: str, *, verbose: bool, quiet: bool) -> None:
    resolved_level = log_level.upper()
    if verbose:
        resolved_level = "DEBUG"
    elif quiet and resolved_level != "DEBUG":
        resolved_level = "WARNING"
    logging.basicConfig(
        level=getattr(logging, resolved_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def load_contracts(path: Path) -> list[dict[str, Any]]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise SystemExit(f"Contracts file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise SystemExit(f"Invalid JSON in {path}: {e}") from e

    if isinstance(payload, dict):
        payload = payload.get("options")
    if not isinstance(payload, list):
        raise SystemExit(f"{path} must contain a list of contracts or an object with an 'options' list")
    return payload


def _print_report_summary(report: IngestionReport) -> None:
    print(
        f"✅ options ingestion complete: symbol={report.symbol} expirations={len(report.outcomes)} "
        f"rows_written={report.total_rows_written} invalid={report.invalid_records}"
    )


def _print_failure(exc: IngestionFailed) -> None:
    report = exc.report
    print(
        f"❌ options ingestion failed: symbol={report.symbol} committed={len(report.committed)} "
        f"failed={len(report.failed)} not_attempted={len(report.not_attempted)} "
        f"rows_written={report.total_rows_written}",
        file=sys.stderr,
    )
    for outcome in report.failed:
        print(f"⚠️ {outcome.expiration_date.isoformat()}: {outcome.error}", file=sys.stderr)


def main(argv: list[str]) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, verbose=args.verbose, quiet=args.quiet)

    symbol = args.symbol.strip().upper()
    if not symbol:
        raise SystemExit("--symbol must not be empty")
    contracts = load_contracts(args.file)

    coordinator = IngestionCoordinator(args.db_url, settings=Settings.from_env())
    logger.info(
        "Options ingestion start",
        extra={"stage": "ingest", "symbol": symbol, "contracts": len(contracts), "file": str(args.file)},
    )
    try:
        report = asyncio.run(
            coordinator.ingest(symbol, contracts, continue_on_error=args.continue_on_error)
        )
    except IngestionFailed as exc:
        _print_failure(exc)
        return 2

    _print_report_summary(report)
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main(sys.argv[1:]))
    except KeyboardInterrupt:
        raise SystemExit(130)
