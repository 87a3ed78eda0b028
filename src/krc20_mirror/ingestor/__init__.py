"""Data ingestion layer - Kasplex indexer and price feed clients."""

from krc20_mirror.ingestor.kasplex_client import KasplexClient
from krc20_mirror.ingestor.models import (
    AddressHolding,
    HolderEntry,
    OperationRecord,
    PriceQuote,
    TokenInfo,
    TokenListPage,
    TokenState,
    TokenSummary,
)
from krc20_mirror.ingestor.price_feed import PriceFeedClient
from krc20_mirror.ingestor.retry import (
    FatalError,
    RetryError,
    TransientError,
    UpstreamError,
    with_retry,
)

__all__ = [
    "AddressHolding",
    "FatalError",
    "HolderEntry",
    "KasplexClient",
    "OperationRecord",
    "PriceFeedClient",
    "PriceQuote",
    "RetryError",
    "TokenInfo",
    "TokenListPage",
    "TokenState",
    "TokenSummary",
    "TransientError",
    "UpstreamError",
    "with_retry",
]
