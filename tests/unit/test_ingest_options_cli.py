from __future__ import annotations

import json
from datetime import date

import pytest

from chainstore.errors import IngestionFailed
from chainstore.ingestion.options.pipeline import ExpirationGroupOutcome, IngestionReport
from scripts import ingest_options


class _StubCoordinator:
    last: "_StubCoordinator | None" = None
    outcome: object = None

    def __init__(self, db_url, *, settings=None) -> None:
        self.db_url = db_url
        self.calls: list[tuple] = []
        _StubCoordinator.last = self

    async def ingest(self, symbol, contracts, *, continue_on_error=False):
        self.calls.append((symbol, list(contracts), continue_on_error))
        if isinstance(_StubCoordinator.outcome, BaseException):
            raise _StubCoordinator.outcome
        return _StubCoordinator.outcome


def _report(*statuses: str) -> IngestionReport:
    return IngestionReport(
        symbol="AAPL",
        outcomes=[
            ExpirationGroupOutcome(
                expiration_date=date(2026, 1, 16 + i),
                status=status,
                records=2,
                rows_written=2 if status == "committed" else 0,
                error="BatchUpsertFailure: boom" if status == "failed" else None,
            )
            for i, status in enumerate(statuses)
        ],
    )


@pytest.fixture
def cli(monkeypatch):
    monkeypatch.setattr(ingest_options, "load_dotenv", lambda: None)
    monkeypatch.setattr(ingest_options, "IngestionCoordinator", _StubCoordinator)
    _StubCoordinator.last = None
    _StubCoordinator.outcome = _report("committed")
    return _StubCoordinator


def _write(tmp_path, payload) -> str:
    path = tmp_path / "contracts.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


@pytest.mark.unit
def test_missing_file_exits_with_message(cli, tmp_path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        ingest_options.main(["--symbol", "AAPL", "--file", str(tmp_path / "nope.json")])
    assert "Contracts file not found" in str(excinfo.value)


@pytest.mark.unit
def test_payload_must_be_a_list(cli, tmp_path) -> None:
    path = _write(tmp_path, {"results": []})
    with pytest.raises(SystemExit) as excinfo:
        ingest_options.main(["--symbol", "AAPL", "--file", path])
    assert "must contain a list of contracts" in str(excinfo.value)


@pytest.mark.unit
def test_blank_symbol_is_rejected(cli, tmp_path) -> None:
    path = _write(tmp_path, [])
    with pytest.raises(SystemExit) as excinfo:
        ingest_options.main(["--symbol", "  ", "--file", path])
    assert "--symbol must not be empty" in str(excinfo.value)


@pytest.mark.unit
def test_successful_ingest_returns_zero(cli, tmp_path, capsys) -> None:
    contract = {"expiration_date": "2026-01-16", "strike": 150, "contract_type": "C"}
    path = _write(tmp_path, {"options": [contract]})

    rc = ingest_options.main(["--symbol", "aapl", "--file", path, "--db-url", "postgresql://x"])

    assert rc == 0
    assert cli.last.db_url == "postgresql://x"
    assert cli.last.calls == [("AAPL", [contract], False)]
    assert "rows_written=2" in capsys.readouterr().out


@pytest.mark.unit
def test_partial_failure_returns_two_and_reports_groups(cli, tmp_path, capsys) -> None:
    report = _report("committed", "failed", "not_attempted")
    cli.outcome = IngestionFailed("Ingestion failed for AAPL", symbol="AAPL", report=report)
    path = _write(tmp_path, [{"expiration_date": "2026-01-16", "strike": 150, "contract_type": "C"}])

    rc = ingest_options.main(["--symbol", "AAPL", "--file", path, "--continue-on-error", "--quiet"])

    assert rc == 2
    assert cli.last.calls[0][2] is True
    err = capsys.readouterr().err
    assert "committed=1 failed=1 not_attempted=1" in err
    assert "2026-01-17: BatchUpsertFailure: boom" in err
