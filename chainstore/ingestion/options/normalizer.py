from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

logger = logging.getLogger(__name__)

_STRIKE_QUANT = Decimal("0.0001")
_ZERO = Decimal("0")


def _parse_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return parsed if parsed.is_finite() else None


def _parse_int(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    parsed = _parse_decimal(value)
    if parsed is None or parsed != parsed.to_integral_value():
        return None
    return int(parsed)


def _parse_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def map_option_type(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip().upper()
    if s in {"C", "CALL"}:
        return "call"
    if s in {"P", "PUT"}:
        return "put"
    return None


@dataclass(frozen=True)
class ContractRecord:
    """One live option contract; (symbol, expiration_date, strike, option_type) is its natural key."""

    symbol: str
    expiration_date: date
    strike: Decimal
    option_type: str
    bid: Decimal = _ZERO
    ask: Decimal = _ZERO
    last: Decimal = _ZERO
    volume: int = 0
    open_interest: int = 0
    implied_volatility: Decimal | None = None
    delta: Decimal | None = None
    gamma: Decimal | None = None
    theta: Decimal | None = None
    vega: Decimal | None = None
    updated_at: datetime | None = None
    id: int | None = None

    @property
    def natural_key(self) -> tuple[str, date, Decimal, str]:
        return (self.symbol, self.expiration_date, self.db_strike(), self.option_type)

    def db_strike(self) -> Decimal:
        return self.strike.quantize(_STRIKE_QUANT)

    def with_symbol(self, symbol: str) -> "ContractRecord":
        return replace(self, symbol=symbol)


@dataclass(frozen=True)
class NormalizationResult:
    records: list[ContractRecord]
    invalid: list[dict[str, Any]]


def normalize_option_contract(raw: dict[str, Any], *, symbol: str) -> ContractRecord | None:
    """Map one acquisition-client payload onto a ContractRecord; None when a key field is unusable."""
    expiration = _parse_date(raw.get("expiration_date"))
    strike = _parse_decimal(raw.get("strike"))
    option_type = map_option_type(raw.get("contract_type"))
    if expiration is None or strike is None or option_type is None:
        return None

    return ContractRecord(
        symbol=symbol,
        expiration_date=expiration,
        strike=strike,
        option_type=option_type,
        bid=_parse_decimal(raw.get("bid")) or _ZERO,
        ask=_parse_decimal(raw.get("ask")) or _ZERO,
        last=_parse_decimal(raw.get("last")) or _ZERO,
        volume=_parse_int(raw.get("volume")) or 0,
        open_interest=_parse_int(raw.get("open_interest")) or 0,
        implied_volatility=_parse_decimal(raw.get("implied_volatility")),
        delta=_parse_decimal(raw.get("delta")),
        gamma=_parse_decimal(raw.get("gamma")),
        theta=_parse_decimal(raw.get("theta")),
        vega=_parse_decimal(raw.get("vega")),
    )


def normalize_option_contracts(results: Iterable[Any], *, symbol: str) -> NormalizationResult:
    records: list[ContractRecord] = []
    invalid: list[dict[str, Any]] = []
    raw_count = 0
    dropped_non_dict = 0
    for raw in results:
        raw_count += 1
        if isinstance(raw, ContractRecord):
            records.append(raw if raw.symbol == symbol else raw.with_symbol(symbol))
            continue
        if not isinstance(raw, dict):
            dropped_non_dict += 1
            continue
        record = normalize_option_contract(raw, symbol=symbol)
        if record is None:
            invalid.append(
                {
                    "ticker": raw.get("ticker"),
                    "expiration_date": raw.get("expiration_date"),
                    "strike": raw.get("strike"),
                    "contract_type": raw.get("contract_type"),
                }
            )
            continue
        records.append(record)

    logger.debug(
        "Normalized option contracts",
        extra={
            "stage": "normalizer",
            "symbol": symbol,
            "raw": raw_count,
            "normalized": len(records),
            "invalid": len(invalid),
            "dropped_non_dict": dropped_non_dict,
        },
    )
    return NormalizationResult(records=records, invalid=invalid)


def _should_replace(existing: ContractRecord, candidate: ContractRecord) -> bool:
    for field in ("open_interest", "gamma"):
        cand_has = bool(getattr(candidate, field))
        exist_has = bool(getattr(existing, field))
        if cand_has != exist_has:
            return cand_has
    return candidate.volume > existing.volume


def deduplicate_contracts(records: Iterable[ContractRecord]) -> tuple[list[ContractRecord], int]:
    """Collapse repeated natural keys; one upsert statement cannot touch the same row twice."""
    dedupe_map: dict[tuple, ContractRecord] = {}
    duplicates = 0
    for record in records:
        key = record.natural_key
        existing = dedupe_map.get(key)
        if existing is None:
            dedupe_map[key] = record
            continue
        duplicates += 1
        if _should_replace(existing, record):
            dedupe_map[key] = record
    return list(dedupe_map.values()), duplicates


def group_by_expiration(records: Iterable[ContractRecord]) -> dict[date, list[ContractRecord]]:
    groups: dict[date, list[ContractRecord]] = {}
    for record in records:
        groups.setdefault(record.expiration_date, []).append(record)
    return dict(sorted(groups.items()))
