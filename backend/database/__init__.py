from .connection import get_db, engine, AsyncSessionLocal, init_db, Base, build_engine, build_session_factory

# Import sync models to ensure they are registered with Base
from .sync_models import (
    BankConnectionDB, SyncRunDB, AccountDB, CategoryDB, LedgerTransactionDB,
    LinkedAccountDB, ExternalTransactionDB,
    ProviderType, ConnectionState, SyncType, SyncStatus, TransactionType, TransactionStatus
)

__all__ = [
    'get_db', 'engine', 'AsyncSessionLocal', 'init_db', 'Base',
    'build_engine', 'build_session_factory',
    # Sync models
    'BankConnectionDB', 'SyncRunDB', 'AccountDB', 'CategoryDB', 'LedgerTransactionDB',
    'LinkedAccountDB', 'ExternalTransactionDB',
    'ProviderType', 'ConnectionState', 'SyncType', 'SyncStatus', 'TransactionType', 'TransactionStatus',
]
