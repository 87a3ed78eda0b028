"""Storage layer - Database schemas and repositories."""

from krc20_mirror.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from krc20_mirror.storage.models import (
    BalanceModel,
    Base,
    HolderModel,
    LastUpdateModel,
    PriceDataModel,
    SyncCheckpointModel,
    TokenModel,
    TransactionModel,
)
from krc20_mirror.storage.repos import (
    BalanceDTO,
    CheckpointRepository,
    CleanupRepository,
    DuplicateCleanupReport,
    HolderDTO,
    HolderRepository,
    LastUpdateRepository,
    PaginationCheckpoint,
    PriceDataDTO,
    PriceDataRepository,
    TokenDTO,
    TokenRepository,
    TransactionDTO,
    TransactionRepository,
)

__all__ = [
    "BalanceDTO",
    "BalanceModel",
    "Base",
    "CheckpointRepository",
    "CleanupRepository",
    "DatabaseManager",
    "DuplicateCleanupReport",
    "HolderDTO",
    "HolderModel",
    "HolderRepository",
    "LastUpdateModel",
    "LastUpdateRepository",
    "PaginationCheckpoint",
    "PriceDataDTO",
    "PriceDataModel",
    "PriceDataRepository",
    "SyncCheckpointModel",
    "TokenDTO",
    "TokenModel",
    "TokenRepository",
    "TransactionDTO",
    "TransactionModel",
    "TransactionRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
