"""Options contract ingestion (acquisition payloads -> option_contracts)."""

from .normalizer import ContractRecord
from .pipeline import (
    ContractSource,
    ExpirationGroupOutcome,
    IngestionCoordinator,
    IngestionReport,
    OptionsChainView,
    RefreshReport,
    SymbolRefreshOutcome,
)
from .retry import RetryController

__all__ = [
    "ContractRecord",
    "ContractSource",
    "ExpirationGroupOutcome",
    "IngestionCoordinator",
    "IngestionReport",
    "OptionsChainView",
    "RefreshReport",
    "RetryController",
    "SymbolRefreshOutcome",
]
