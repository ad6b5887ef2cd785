from __future__ import annotations

from datetime import date, datetime
from typing import Any, Iterable, Sequence

from chainstore.config import Settings
from chainstore.ingestion.options import (
    ContractRecord,
    ContractSource,
    IngestionCoordinator,
    IngestionReport,
    OptionsChainView,
    RefreshReport,
)
from chainstore.lifecycle import LifecycleManager, LifecycleResult, LifecycleScheduler


class OptionsChainStore:
    """Entry point for request paths and timers: ingestion, reads and maintenance."""

    def __init__(
        self,
        db_url: str | None = None,
        *,
        settings: Settings | None = None,
        coordinator: IngestionCoordinator | None = None,
        manager: LifecycleManager | None = None,
        scheduler: LifecycleScheduler | None = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        resolved_url = db_url or self.settings.database_url
        self.coordinator = coordinator or IngestionCoordinator(resolved_url, settings=self.settings)
        self.manager = manager or LifecycleManager(resolved_url, settings=self.settings)
        self.scheduler = scheduler or LifecycleScheduler(self.manager, db_url=resolved_url, settings=self.settings)

    @classmethod
    def from_env(cls) -> "OptionsChainStore":
        return cls(settings=Settings.from_env())

    async def ingest(
        self,
        symbol: str,
        contracts: Sequence[ContractRecord | dict[str, Any]],
        *,
        continue_on_error: bool = False,
    ) -> IngestionReport:
        return await self.coordinator.ingest(symbol, contracts, continue_on_error=continue_on_error)

    async def get_live_contracts(self, symbol: str, expiration_date: date | None = None) -> list[ContractRecord]:
        return await self.coordinator.get_live_contracts(symbol, expiration_date)

    async def get_expiration_dates(self, symbol: str) -> list[date]:
        return await self.coordinator.get_expiration_dates(symbol)

    async def clear_live_contracts(self, symbol: str) -> int:
        return await self.coordinator.clear_live_contracts(symbol)

    async def get_options_chain(self, symbol: str) -> OptionsChainView | None:
        return await self.coordinator.get_options_chain(symbol)

    async def refresh_symbols(self, symbols: Iterable[str], source: ContractSource) -> RefreshReport:
        # Every refresh cycle doubles as a tick for the Saturday archival window.
        await self.scheduler.run_weekly_archival_if_due()
        return await self.coordinator.refresh_symbols(symbols, source)

    async def archive_expired_and_cleanup(self, *, now: datetime | None = None) -> LifecycleResult:
        return await self.manager.archive_expired_and_cleanup(now=now)

    async def run_daily_cleanup_if_due(self) -> bool:
        return await self.scheduler.run_daily_cleanup_if_due()

    async def run_weekly_archival_if_due(self) -> bool:
        return await self.scheduler.run_weekly_archival_if_due()
