from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Protocol, Sequence

from chainstore.config import Settings, settings as default_settings
from chainstore.db.locks import ingest_lock_key, locked_transaction
from chainstore.errors import IngestionFailed

from . import db as options_db
from .normalizer import (
    ContractRecord,
    deduplicate_contracts,
    group_by_expiration,
    normalize_option_contracts,
)
from .retry import RetryController

logger = logging.getLogger(__name__)

STATUS_COMMITTED = "committed"
STATUS_FAILED = "failed"
STATUS_NOT_ATTEMPTED = "not_attempted"


def _format_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def dedupe_and_sort_symbols(symbols: Iterable[str]) -> list[str]:
    return sorted({str(s).strip().upper() for s in symbols if s and str(s).strip()})


@dataclass(frozen=True)
class ExpirationGroupOutcome:
    expiration_date: date
    status: str
    records: int
    rows_written: int = 0
    batches: int = 0
    attempts: int = 0
    elapsed_s: float = 0.0
    error_type: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_COMMITTED


@dataclass(frozen=True)
class IngestionReport:
    symbol: str
    outcomes: list[ExpirationGroupOutcome] = field(default_factory=list)
    invalid_records: int = 0
    duplicate_records: int = 0
    elapsed_s: float = 0.0

    @property
    def total_rows_written(self) -> int:
        return sum(o.rows_written for o in self.outcomes)

    @property
    def committed(self) -> list[ExpirationGroupOutcome]:
        return [o for o in self.outcomes if o.status == STATUS_COMMITTED]

    @property
    def failed(self) -> list[ExpirationGroupOutcome]:
        return [o for o in self.outcomes if o.status == STATUS_FAILED]

    @property
    def not_attempted(self) -> list[ExpirationGroupOutcome]:
        return [o for o in self.outcomes if o.status == STATUS_NOT_ATTEMPTED]

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)


@dataclass(frozen=True)
class OptionsChainSide:
    calls: list[ContractRecord]
    puts: list[ContractRecord]


@dataclass(frozen=True)
class OptionsChainView:
    symbol: str
    expiration_dates: list[date]
    chains: dict[date, OptionsChainSide]


class ContractSource(Protocol):
    """Market-data acquisition client; yields OptionContract payloads for one underlying."""

    async def fetch_option_contracts(self, symbol: str) -> Sequence[dict[str, Any] | ContractRecord]:
        ...


@dataclass(frozen=True)
class SymbolRefreshOutcome:
    symbol: str
    ok: bool
    contracts_fetched: int
    rows_written: int
    elapsed_s: float
    skipped: bool = False
    error_type: str | None = None
    error: str | None = None
    report: IngestionReport | None = None


@dataclass(frozen=True)
class RefreshReport:
    symbols: list[str]
    outcomes: list[SymbolRefreshOutcome]
    total_rows_written: int
    elapsed_s: float


class IngestionCoordinator:
    """Serializes writes per (symbol, expiration) and applies them as batched upserts.

    Each expiration group is one transaction holding the advisory lock for
    ``f"{symbol}_{expiration}"``. Groups run one after another; a committed group
    stays committed when a later group fails.
    """

    def __init__(
        self,
        db_url: str | None = None,
        *,
        settings: Settings | None = None,
        retry: RetryController | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._db_url = db_url
        self._retry = retry or RetryController(
            max_attempts=self._settings.retry_max_attempts,
            base_delay_ms=self._settings.retry_base_delay_ms,
            jitter_ms=self._settings.retry_jitter_ms,
        )

    @property
    def db_url(self) -> str:
        return self._db_url or self._settings.require_database_url()

    def _write_group(self, symbol: str, expiration_date: date, records: list[ContractRecord]) -> options_db.BatchWriteResult:
        conn = options_db.connect(self.db_url)
        try:
            with locked_transaction(
                conn,
                ingest_lock_key(symbol, expiration_date),
                lock_timeout_ms=self._settings.lock_timeout_ms,
            ):
                return options_db.write_batches(conn, records)
        finally:
            conn.close()

    async def _ingest_group(
        self,
        symbol: str,
        expiration_date: date,
        records: list[ContractRecord],
    ) -> ExpirationGroupOutcome:
        started = time.perf_counter()

        async def unit_of_work() -> options_db.BatchWriteResult:
            return await asyncio.to_thread(self._write_group, symbol, expiration_date, records)

        result, attempts = await self._retry.run_with_retry(
            unit_of_work,
            context={"symbol": symbol, "expiration_date": expiration_date.isoformat()},
        )
        elapsed = time.perf_counter() - started
        logger.info(
            "Expiration group committed",
            extra={
                "stage": "ingest",
                "symbol": symbol,
                "expiration_date": expiration_date.isoformat(),
                "rows_written": result.rows_written,
                "batches": result.batches,
                "batch_size": result.batch_size,
                "attempts": attempts,
                "duration_ms": int(round(elapsed * 1000)),
            },
        )
        return ExpirationGroupOutcome(
            expiration_date=expiration_date,
            status=STATUS_COMMITTED,
            records=len(records),
            rows_written=result.rows_written,
            batches=result.batches,
            attempts=attempts,
            elapsed_s=elapsed,
        )

    async def ingest(
        self,
        symbol: str,
        contracts: Sequence[ContractRecord | dict[str, Any]],
        *,
        continue_on_error: bool = False,
    ) -> IngestionReport:
        symbol = str(symbol).strip().upper()
        if not contracts:
            return IngestionReport(symbol=symbol)

        started = time.perf_counter()
        normalized = normalize_option_contracts(contracts, symbol=symbol)
        if normalized.invalid:
            logger.error(
                "Some option contracts cannot be persisted (missing required fields)",
                extra={
                    "stage": "normalizer",
                    "symbol": symbol,
                    "root_cause": "missing_required_fields",
                    "invalid_rows": len(normalized.invalid),
                    "example_ticker": normalized.invalid[0].get("ticker"),
                },
            )

        records, duplicates = deduplicate_contracts(normalized.records)
        if duplicates:
            logger.debug(
                "Deduplicated option contracts before DB write",
                extra={
                    "stage": "ingest",
                    "symbol": symbol,
                    "rows_before": len(normalized.records),
                    "rows_after": len(records),
                    "duplicate_key_count": duplicates,
                },
            )

        groups = group_by_expiration(records)
        outcomes: list[ExpirationGroupOutcome] = []
        first_error: BaseException | None = None

        for expiration_date, group in groups.items():
            if first_error is not None and not continue_on_error:
                outcomes.append(
                    ExpirationGroupOutcome(
                        expiration_date=expiration_date,
                        status=STATUS_NOT_ATTEMPTED,
                        records=len(group),
                    )
                )
                continue

            group_started = time.perf_counter()
            try:
                outcomes.append(await self._ingest_group(symbol, expiration_date, group))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "Expiration group failed",
                    extra={
                        "stage": "ingest",
                        "symbol": symbol,
                        "expiration_date": expiration_date.isoformat(),
                        "records": len(group),
                        "root_cause": type(exc).__name__,
                        "error": _format_error(exc),
                    },
                )
                outcomes.append(
                    ExpirationGroupOutcome(
                        expiration_date=expiration_date,
                        status=STATUS_FAILED,
                        records=len(group),
                        attempts=getattr(exc, "attempts", 1),
                        elapsed_s=time.perf_counter() - group_started,
                        error_type=type(exc).__name__,
                        error=_format_error(exc),
                    )
                )
                if first_error is None:
                    first_error = exc

        report = IngestionReport(
            symbol=symbol,
            outcomes=outcomes,
            invalid_records=len(normalized.invalid),
            duplicate_records=duplicates,
            elapsed_s=time.perf_counter() - started,
        )

        if first_error is not None:
            raise IngestionFailed(
                f"Ingestion failed for {symbol}: {len(report.failed)} of {len(outcomes)} expiration groups failed "
                f"({len(report.committed)} committed, {len(report.not_attempted)} not attempted)",
                symbol=symbol,
                report=report,
            ) from first_error

        logger.info(
            "Options ingestion symbol committed",
            extra={
                "stage": "ingest",
                "symbol": symbol,
                "expiration_groups": len(outcomes),
                "rows_written": report.total_rows_written,
                "invalid_rows": report.invalid_records,
                "duration_ms": int(round(report.elapsed_s * 1000)),
            },
        )
        return report

    def _read(self, fn, **kwargs):
        conn = options_db.connect(self.db_url)
        try:
            result = fn(conn, **kwargs)
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    async def get_live_contracts(self, symbol: str, expiration_date: date | None = None) -> list[ContractRecord]:
        return await asyncio.to_thread(
            self._read,
            options_db.fetch_live_contracts,
            symbol=str(symbol).strip().upper(),
            expiration_date=expiration_date,
        )

    async def get_expiration_dates(self, symbol: str) -> list[date]:
        return await asyncio.to_thread(
            self._read,
            options_db.fetch_expiration_dates,
            symbol=str(symbol).strip().upper(),
        )

    async def clear_live_contracts(self, symbol: str) -> int:
        symbol = str(symbol).strip().upper()
        deleted = await asyncio.to_thread(self._read, options_db.delete_live_contracts, symbol=symbol)
        logger.info(
            "Cleared live option contracts",
            extra={"stage": "ingest", "symbol": symbol, "rows_deleted": deleted},
        )
        return deleted

    async def get_options_chain(self, symbol: str) -> OptionsChainView | None:
        contracts = await self.get_live_contracts(symbol)
        if not contracts:
            return None
        return build_options_chain_view(str(symbol).strip().upper(), contracts)

    async def refresh_symbols(self, symbols: Iterable[str], source: ContractSource) -> RefreshReport:
        """Fetch and ingest each unique symbol once; one symbol's failure does not stop the others."""
        started = time.perf_counter()
        selected = dedupe_and_sort_symbols(symbols)
        outcomes: list[SymbolRefreshOutcome] = []

        for symbol in selected:
            sym_started = time.perf_counter()
            fetched = 0
            try:
                contracts = list(await source.fetch_option_contracts(symbol) or [])
                fetched = len(contracts)
                if not contracts:
                    logger.info(
                        "No option contracts available, keeping stored data",
                        extra={"stage": "ingest", "symbol": symbol, "reason": "empty_payload"},
                    )
                    outcomes.append(
                        SymbolRefreshOutcome(
                            symbol=symbol,
                            ok=True,
                            contracts_fetched=0,
                            rows_written=0,
                            elapsed_s=time.perf_counter() - sym_started,
                            skipped=True,
                        )
                    )
                    continue
                report = await self.ingest(symbol, contracts)
                outcomes.append(
                    SymbolRefreshOutcome(
                        symbol=symbol,
                        ok=True,
                        contracts_fetched=fetched,
                        rows_written=report.total_rows_written,
                        elapsed_s=time.perf_counter() - sym_started,
                        report=report,
                    )
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "Options refresh symbol failed",
                    extra={
                        "stage": "ingest",
                        "symbol": symbol,
                        "contracts_fetched": fetched,
                        "root_cause": type(exc).__name__,
                        "error": _format_error(exc),
                    },
                )
                partial = exc.report if isinstance(exc, IngestionFailed) else None
                outcomes.append(
                    SymbolRefreshOutcome(
                        symbol=symbol,
                        ok=False,
                        contracts_fetched=fetched,
                        rows_written=partial.total_rows_written if partial else 0,
                        elapsed_s=time.perf_counter() - sym_started,
                        error_type=type(exc).__name__,
                        error=_format_error(exc),
                        report=partial,
                    )
                )

        elapsed = time.perf_counter() - started
        total_rows = sum(o.rows_written for o in outcomes)
        logger.info(
            "Options refresh run complete",
            extra={
                "stage": "ingest",
                "symbols_total": len(selected),
                "symbols_succeeded": sum(1 for o in outcomes if o.ok and not o.skipped),
                "symbols_skipped": sum(1 for o in outcomes if o.skipped),
                "symbols_failed": sum(1 for o in outcomes if not o.ok),
                "rows_written_total": total_rows,
                "elapsed_s": round(elapsed, 6),
            },
        )
        return RefreshReport(symbols=selected, outcomes=outcomes, total_rows_written=total_rows, elapsed_s=elapsed)


def build_options_chain_view(symbol: str, contracts: Iterable[ContractRecord]) -> OptionsChainView:
    by_expiration = group_by_expiration(contracts)
    chains: dict[date, OptionsChainSide] = {}
    for expiration_date, group in by_expiration.items():
        chains[expiration_date] = OptionsChainSide(
            calls=sorted((c for c in group if c.option_type == "call"), key=lambda c: c.strike),
            puts=sorted((c for c in group if c.option_type == "put"), key=lambda c: c.strike),
        )
    return OptionsChainView(symbol=symbol, expiration_dates=list(chains.keys()), chains=chains)

